from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from typing import Optional, List, Dict
from datetime import datetime
from shared.security_config import sanitize_input, sanitize_list, validate_password_strength
from shared.utils import utc_naive
from pizzeria.models import (
    Size, Category, OrderType, PaymentMethod, PaymentStatus, OrderStatus, CouponType,
    SizeOption, SelectedCustomization, CustomerInfo, DeliveryAddress, StatusChange
)

# --- Auth ---
class UserRegister(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)
    phone: Optional[str] = None

    @field_validator('password')
    def password_complexity(cls, v):
        if not validate_password_strength(v):
            raise ValueError('Password must be at least 8 characters long and contain uppercase, lowercase, and numbers')
        return v

    @field_validator('name', 'phone')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str

class RefreshTokenRequest(BaseModel):
    refresh_token: str

class UserResponse(BaseModel):
    id: str
    name: str
    email: EmailStr
    phone: Optional[str] = None
    address: Optional[DeliveryAddress] = None
    role: str
    created_at: datetime

class UserListResponse(BaseModel):
    users: List[UserResponse]
    total: int
    page: int
    limit: int

class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    address: Optional[DeliveryAddress] = None

    @field_validator('name', 'phone')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)

    @field_validator('new_password')
    def password_complexity(cls, v):
        if not validate_password_strength(v):
            raise ValueError('Password must be at least 8 characters long and contain uppercase, lowercase, and numbers')
        return v

# --- Products ---
class ProductBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    category: Category
    price: float = Field(..., ge=0)
    sizes: Dict[Size, SizeOption] = {}
    image_url: Optional[str] = None
    ingredients: List[str] = []
    is_vegetarian: bool = False
    is_spicy: bool = False
    inventory: int = Field(100, ge=0)
    tags: List[str] = []

class ProductCreate(ProductBase):
    @field_validator('name', 'description', 'image_url')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('ingredients')
    def sanitize_ingredients(cls, v):
        return sanitize_list(v)

    @field_validator('tags')
    def lowercase_tags(cls, v):
        return sanitize_list([t.lower() for t in v])

class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: Optional[Category] = None
    price: Optional[float] = Field(None, ge=0)
    sizes: Optional[Dict[Size, SizeOption]] = None
    image_url: Optional[str] = None
    ingredients: Optional[List[str]] = None
    is_vegetarian: Optional[bool] = None
    is_spicy: Optional[bool] = None
    is_available: Optional[bool] = None
    tags: Optional[List[str]] = None

    @field_validator('name', 'description', 'image_url')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('ingredients', 'tags')
    def sanitize_lists(cls, v, info):
        if v is not None and info.field_name == 'tags':
            v = [t.lower() for t in v]
        return sanitize_list(v)

class InventoryUpdate(BaseModel):
    inventory: int = Field(..., ge=0)

class ProductResponse(ProductBase):
    id: str
    is_available: bool
    rating: float = 0
    order_count: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None

class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    total: int
    page: int
    limit: int

class LowStockResponse(BaseModel):
    products: List[ProductResponse]
    count: int
    threshold: int

# --- Customizations ---
class CustomizationBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    type: str = Field(..., pattern="^(topping|crust|sauce|cheese)$")
    price: float = Field(0, ge=0)
    is_vegetarian: bool = True
    is_available: bool = True
    applicable_categories: List[Category] = []

class CustomizationCreate(CustomizationBase):
    @field_validator('name')
    def sanitize_name(cls, v):
        return sanitize_input(v)

class CustomizationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    type: Optional[str] = Field(None, pattern="^(topping|crust|sauce|cheese)$")
    price: Optional[float] = Field(None, ge=0)
    is_vegetarian: Optional[bool] = None
    is_available: Optional[bool] = None
    applicable_categories: Optional[List[Category]] = None

    @field_validator('name')
    def sanitize_name(cls, v):
        return sanitize_input(v)

class CustomizationResponse(CustomizationBase):
    id: str

# --- Cart ---
class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, gt=0)
    size: Size = "medium"
    customizations: List[str] = []
    notes: Optional[str] = Field(None, max_length=200)

    @field_validator('notes')
    def sanitize_notes(cls, v):
        return sanitize_input(v)

class CartItemUpdate(BaseModel):
    # zero or less removes the line
    quantity: int

class CartMerge(BaseModel):
    session_id: str = Field(..., min_length=1)

class CartItemResponse(BaseModel):
    id: str
    product_id: str
    name: str
    quantity: int
    size: Size
    price: float
    customizations: List[SelectedCustomization] = []
    notes: Optional[str] = None

class CartResponse(BaseModel):
    id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItemResponse]
    subtotal: float
    tax: float
    total: float
    updated_at: datetime

# --- Coupons ---
class CouponCreate(BaseModel):
    code: str = Field(..., min_length=3, max_length=20)
    description: Optional[str] = Field(None, max_length=200)
    type: CouponType
    value: float = Field(..., ge=0)
    min_order_amount: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    user_usage_limit: Optional[int] = Field(1, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: datetime
    is_active: bool = True

    @field_validator('code')
    def uppercase_code(cls, v):
        return v.strip().upper()

    @field_validator('description')
    def sanitize_description(cls, v):
        return sanitize_input(v)

    @field_validator('valid_from', 'valid_until')
    def naive_utc(cls, v):
        return utc_naive(v)

    @model_validator(mode='after')
    def check_percentage(self):
        if self.type == "percentage" and self.value > 100:
            raise ValueError('Percentage discount cannot exceed 100')
        return self

class CouponUpdate(BaseModel):
    # code, used_count and used_by are deliberately absent
    description: Optional[str] = Field(None, max_length=200)
    type: Optional[CouponType] = None
    value: Optional[float] = Field(None, ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    user_usage_limit: Optional[int] = Field(None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None

    @field_validator('valid_from', 'valid_until')
    def naive_utc(cls, v):
        return utc_naive(v)

class CouponValidateRequest(BaseModel):
    code: str = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)

class CouponValidateResponse(BaseModel):
    code: str
    valid: bool
    discount: float = 0
    reason: Optional[str] = None
    type: Optional[CouponType] = None
    value: Optional[float] = None
    description: Optional[str] = None

class CouponResponse(BaseModel):
    id: str
    code: str
    description: Optional[str] = None
    type: CouponType
    value: float
    min_order_amount: float
    max_discount: Optional[float] = None
    usage_limit: Optional[int] = None
    used_count: int
    user_usage_limit: Optional[int] = None
    remaining_uses: Optional[int] = None
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    @model_validator(mode='after')
    def fill_remaining(self):
        if self.usage_limit is not None:
            self.remaining_uses = max(0, self.usage_limit - self.used_count)
        return self

class CouponListResponse(BaseModel):
    coupons: List[CouponResponse]
    total: int
    page: int
    limit: int

# --- Orders ---
class OrderCreate(BaseModel):
    type: OrderType
    payment_method: PaymentMethod = "cash"
    customer_info: CustomerInfo
    delivery_address: Optional[DeliveryAddress] = None
    coupon_code: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator('notes')
    def sanitize_notes(cls, v):
        return sanitize_input(v)

    @model_validator(mode='after')
    def require_address_for_delivery(self):
        if self.type == "delivery" and self.delivery_address is None:
            raise ValueError('Delivery address required for delivery orders')
        return self

class OrderStatusUpdate(BaseModel):
    status: OrderStatus

class OrderItemResponse(BaseModel):
    product_id: str
    name: str
    quantity: int
    size: Size
    price: float
    customizations: List[SelectedCustomization] = []
    customization_total: float = 0
    notes: Optional[str] = None

class OrderResponse(BaseModel):
    id: str
    order_number: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[OrderItemResponse]
    subtotal: float
    tax: float
    delivery_fee: float
    discount: float
    coupon_code: Optional[str] = None
    total: float
    type: OrderType
    status: OrderStatus
    status_history: List[StatusChange] = []
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    customer_info: CustomerInfo
    delivery_address: Optional[DeliveryAddress] = None
    notes: Optional[str] = None
    estimated_delivery: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    total: int
    page: int
    limit: int

class TrackedItem(BaseModel):
    name: str
    quantity: int
    size: Size

class OrderTrackResponse(BaseModel):
    order_number: str
    status: OrderStatus
    type: OrderType
    items: List[TrackedItem]
    total: float
    estimated_delivery: datetime
    created_at: datetime

# --- Recommendations ---
class RecommendationResponse(BaseModel):
    product: ProductResponse
    score: float
    reasons: List[str] = []

class SimilarItemsRequest(BaseModel):
    product_ids: List[str] = Field(..., min_length=1)

class DietaryPreferencesUpdate(BaseModel):
    vegetarian: bool = False
    spicy: bool = False

class PreferencesResponse(BaseModel):
    user_id: str
    favorite_products: Dict[str, int] = {}
    favorite_categories: Dict[str, int] = {}
    total_orders: int = 0
    total_spent: float = 0
    dietary_preferences: Dict[str, bool] = {}

class ReorderSuggestion(BaseModel):
    product: ProductResponse
    order_count: int
    reason: str
