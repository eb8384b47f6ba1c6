from datetime import datetime
from typing import Optional, List, Dict, Literal
from pydantic import BaseModel, EmailStr, Field, model_validator

Size = Literal["small", "medium", "large", "extra_large"]
Category = Literal["pizza", "drink", "bread", "sides"]
OrderType = Literal["delivery", "carryout"]
PaymentMethod = Literal["cash", "card", "online"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
OrderStatus = Literal["pending", "confirmed", "preparing", "ready", "delivered", "cancelled"]
CouponType = Literal["percentage", "fixed"]

# --- Users ---
class DeliveryAddress(BaseModel):
    street: str
    city: str
    state: Optional[str] = None
    zip_code: Optional[str] = None

class UserDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    email: EmailStr
    phone: Optional[str] = None
    address: Optional[DeliveryAddress] = None
    password_hash: str
    role: str = "customer"
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

# --- Catalog ---
class SizeOption(BaseModel):
    price: float = 0
    available: bool = True

class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    description: str = ""
    category: Category
    price: float  # base price, used when a size has no price of its own
    sizes: Dict[str, SizeOption] = {}
    image_url: Optional[str] = None
    ingredients: List[str] = []
    is_vegetarian: bool = False
    is_spicy: bool = False
    is_available: bool = True
    inventory: int = Field(100, ge=0)
    tags: List[str] = []
    rating: float = 0
    order_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

class CustomizationDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    type: Literal["topping", "crust", "sauce", "cheese"]
    price: float = 0
    is_vegetarian: bool = True
    is_available: bool = True
    applicable_categories: List[Category] = []
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

# --- Cart ---
class SelectedCustomization(BaseModel):
    customization_id: str
    name: str
    price: float = 0  # snapshot

class CartItemDB(BaseModel):
    id: str
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    size: Size = "medium"
    price: float  # snapshot
    customizations: List[SelectedCustomization] = []
    notes: Optional[str] = None  # escaped; length is capped on input

class CartDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItemDB] = []
    subtotal: float = 0
    tax: float = 0
    total: float = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

# --- Coupons ---
class CouponDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    code: str
    description: Optional[str] = None
    type: CouponType
    value: float = Field(..., ge=0)
    min_order_amount: float = 0
    max_discount: Optional[float] = None
    usage_limit: Optional[int] = None
    used_count: int = 0
    user_usage_limit: Optional[int] = 1
    used_by: Dict[str, int] = {}
    valid_from: datetime = Field(default_factory=datetime.utcnow)
    valid_until: datetime
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

    @model_validator(mode='after')
    def check_percentage(self):
        if self.type == "percentage" and self.value > 100:
            raise ValueError('Percentage discount cannot exceed 100')
        return self

# --- Orders ---
class CustomerInfo(BaseModel):
    name: str
    email: EmailStr
    phone: str

class OrderItemDB(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    size: Size = "medium"
    price: float
    customizations: List[SelectedCustomization] = []
    customization_total: float = 0
    notes: Optional[str] = None

class StatusChange(BaseModel):
    status: OrderStatus
    at: datetime = Field(default_factory=datetime.utcnow)

class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_number: str
    order_date: str
    sequence: int
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[OrderItemDB]
    subtotal: float
    tax: float
    delivery_fee: float = 0
    discount: float = 0
    coupon_code: Optional[str] = None
    total: float
    type: OrderType
    status: OrderStatus = "pending"
    status_history: List[StatusChange] = []
    payment_method: PaymentMethod = "cash"
    payment_status: PaymentStatus = "pending"
    customer_info: CustomerInfo
    delivery_address: Optional[DeliveryAddress] = None
    notes: Optional[str] = None
    estimated_delivery: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
