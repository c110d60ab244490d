"""
Pydantic schemas for request/response validation in the Inventory service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProductBase(BaseModel):
    """Base schema with common product attributes."""
    product_name: str
    price: Decimal = Field(default=Decimal("0"), ge=0)
    quantity: int = Field(default=0, ge=0)


class ProductCreate(ProductBase):
    """Schema for creating a new product."""
    pass


class ProductUpdate(BaseModel):
    """
    Schema for updating an existing product. All fields are optional.

    ``restock`` adds (or, when negative, removes) units relative to the
    current stock. ``quantity`` sets an absolute level and is refused if the
    stock changed after it was read. At most one of the two may be given.
    """
    product_name: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    quantity: Optional[int] = Field(default=None, ge=0)
    restock: Optional[int] = None

    @model_validator(mode="after")
    def check_stock_fields(self):
        if self.quantity is not None and self.restock is not None:
            raise ValueError("Provide either quantity or restock, not both")
        return self


class Product(ProductBase):
    """
    Schema for product responses, includes all database fields.

    Attributes:
        product_id (int): Product's unique identifier
        product_name (str): Display name
        price (Decimal): List price
        quantity (int): Units available
        created_at (datetime): When the product was created
        updated_at (datetime): Last change
    """
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
