"""
Database Schemas for the storefront checkout flow

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
Request bodies live at the bottom of the file.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

OrderStatus = Literal["pending", "shipping", "delivered", "cancelled"]
PaymentMethod = Literal["COD", "Card", "UPI"]
PaymentStatus = Literal["pending", "paid"]
ProductStatus = Literal["Active", "Limited", "Out of Stock"]

ORDER_STATUSES = ("pending", "shipping", "delivered", "cancelled")
ADDRESS_REQUIRED_FIELDS = ("fullName", "phoneNumber", "line1", "city", "state", "postalCode")


# ----------------------- Catalog (read-only here) -----------------------
class ProductImage(BaseModel):
    url: str
    alt: str = "Product Image"
    isPrimary: bool = False


class SizeStock(BaseModel):
    size: str
    stock: int = Field(0, ge=0)


class Product(BaseModel):
    name: str
    brand: str = ""
    description: str = ""
    price: float = Field(..., ge=0)
    category: str = ""
    subcategory: str = ""
    status: ProductStatus = "Active"
    images: List[ProductImage] = []
    image: Optional[str] = None
    sizes: List[SizeStock] = []


# ----------------------- Users & addresses -----------------------
class Address(BaseModel):
    fullName: str
    phoneNumber: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    postalCode: str
    country: str = "India"


class User(BaseModel):
    email: str
    role: Literal["user", "admin"] = "user"
    status: Literal["active", "inactive"] = "active"
    addresses: List[Address] = []


# ----------------------- Cart -----------------------
class CartLine(BaseModel):
    productId: str
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None


class Cart(BaseModel):
    user: str
    products: List[CartLine] = []
    totalPrice: float = 0
    version: int = 0


# ----------------------- Orders -----------------------
class OrderItem(BaseModel):
    productId: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    image: Optional[str] = None


class PendingOrder(BaseModel):
    user: str
    status: Literal["pending"] = "pending"
    paymentMethod: PaymentMethod = "COD"
    paymentStatus: PaymentStatus = "pending"
    items: List[OrderItem] = []
    totalPrice: float = 0
    shippingAddress: Optional[Address] = None


class GatewayPayment(BaseModel):
    gatewayOrderId: str
    gatewayPaymentId: str
    paidAt: datetime


class Order(BaseModel):
    user: str
    customOrderId: str
    items: List[OrderItem]
    shippingAddress: Address
    subtotal: float = Field(..., ge=0)
    shippingCharge: float = Field(0, ge=0)
    deliveryCharge: float = Field(0, ge=0)
    totalPrice: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    paymentMethod: PaymentMethod = "COD"
    paymentStatus: PaymentStatus = "pending"
    payment: Optional[GatewayPayment] = None


# ----------------------- Request bodies -----------------------
class AddToCartBody(BaseModel):
    productId: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None


class UpdateCartBody(BaseModel):
    productId: str
    quantity: int
    size: Optional[str] = None


class RemoveFromCartBody(BaseModel):
    productId: str
    size: Optional[str] = None


class AddressBody(BaseModel):
    """Address fields as posted by the storefront; required ones are checked by the service."""
    fullName: Optional[str] = None
    phoneNumber: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postalCode: Optional[str] = None
    country: Optional[str] = None


class CODOrderBody(BaseModel):
    totalPrice: Optional[float] = None


class StatusChange(BaseModel):
    status: str


class CreatePaymentBody(BaseModel):
    amount: float
    currency: Optional[str] = None


class OrderDetails(BaseModel):
    items: List[dict] = []
    shippingAddress: Optional[AddressBody] = None
    totalPrice: Optional[float] = None


class VerifyPaymentBody(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    orderDetails: OrderDetails = OrderDetails()
