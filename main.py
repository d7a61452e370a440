import logging
import os
import re
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

import database
import inventory
from auth import (
    authenticate, clear_session_cookie, delete_user, get_admin_user, get_current_user,
    get_optional_user, is_privileged, issue_credential, list_users, register_user, set_session_cookie,
)
from catalog_sync import CatalogClient, sync_products_if_empty
from config import CORS_ORIGINS, LOG_LEVEL
from errors import Forbidden, ValidationError
from schemas import EMAIL_PATTERN, Identity, OrderStatus, Role

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# App setup
app = FastAPI(title="Shop API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

EMAIL_RE = re.compile(EMAIL_PATTERN)


# Payloads
def _clean_email(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("Email is required")
    if not EMAIL_RE.match(v):
        raise ValueError("Invalid email format")
    return v.lower()


def _strong_password(v: str) -> str:
    if len(v) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(v) > 128:
        raise ValueError("Password must be at most 128 characters")
    if not re.search(r"[a-z]", v):
        raise ValueError("Password must contain lowercase letters")
    if not re.search(r"[0-9]", v):
        raise ValueError("Password must contain numbers")
    return v


class LoginPayload(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def check_email(cls, v):
        return _clean_email(v)

    @field_validator("password")
    @classmethod
    def check_password(cls, v):
        if not v:
            raise ValueError("Password is required")
        return v


class RegisterPayload(BaseModel):
    name: str
    email: str
    password: str
    role: Optional[Role] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, v):
        v = v.strip()
        if len(v) < 2 or len(v) > 100:
            raise ValueError("Name must be between 2 and 100 characters")
        return v

    @field_validator("email")
    @classmethod
    def check_email(cls, v):
        return _clean_email(v)

    @field_validator("password")
    @classmethod
    def check_password(cls, v):
        if not v.strip():
            raise ValueError("Password is required")
        return _strong_password(v)


class UserDeletePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")


class ProductIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    image_url: Optional[str] = Field(None, alias="imageUrl")


class ProductUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = Field(None, alias="imageUrl")


class OrderIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId", min_length=1)
    quantity: int


class OrderUpdate(BaseModel):
    quantity: Optional[int] = None
    status: Optional[OrderStatus] = None


def get_catalog_client() -> CatalogClient:
    return CatalogClient()


# Error translation
@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": message})


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal server error"})


# Public endpoints
@app.get("/", tags=["meta"])
def read_root():
    return {"message": "Shop API running"}


@app.get("/health", tags=["meta"])
def health():
    try:
        database.get_db().command("ping")
        return {"backend": "ok", "database": "ok"}
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        return JSONResponse(status_code=503, content={"backend": "ok", "database": "unavailable"})


# Authentication
@app.post("/login", tags=["auth"])
def login(payload: LoginPayload, response: Response):
    identity = authenticate(payload.email, payload.password)
    set_session_cookie(response, issue_credential(identity))
    return {"user": identity.model_dump(), "message": "Logged in"}


@app.get("/login", tags=["auth"])
def login_usage():
    return {"message": "Use POST to log in", "example": {"email": "admin@example.com", "password": "password123"}}


@app.post("/logout", tags=["auth"])
@app.get("/logout", tags=["auth"])
def logout():
    response = RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)
    clear_session_cookie(response)
    return response


@app.post("/register", status_code=status.HTTP_201_CREATED, tags=["auth"])
def register(payload: RegisterPayload):
    identity = register_user(payload.name, payload.email, payload.password, payload.role or "CUSTOMER")
    return {"user": identity.model_dump(), "message": "Account created"}


@app.get("/me", tags=["auth"])
def me(current_user: Identity = Depends(get_current_user)):
    return current_user.model_dump()


# Products
@app.get("/products", tags=["products"])
def list_products(search: Optional[str] = None, catalog: CatalogClient = Depends(get_catalog_client),
                  _: Optional[Identity] = Depends(get_optional_user)):
    sync_products_if_empty(catalog)
    return inventory.list_products(search)


@app.post("/products", status_code=status.HTTP_201_CREATED, tags=["products"])
def create_product(body: ProductIn, _: Identity = Depends(get_admin_user)):
    return inventory.create_product(**body.model_dump())


@app.get("/products/{product_id}", tags=["products"])
def get_product(product_id: str):
    return inventory.get_product(product_id)


@app.put("/products/{product_id}", tags=["products"])
def update_product(product_id: str, body: ProductUpdate, _: Identity = Depends(get_admin_user)):
    return inventory.update_product(product_id, body.model_dump(exclude_unset=True))


@app.delete("/products/{product_id}", tags=["products"])
def delete_product(product_id: str, _: Identity = Depends(get_admin_user)):
    inventory.delete_product(product_id)
    return {"message": "Product deleted"}


# Orders
@app.get("/orders", tags=["orders"])
def list_orders(current_user: Identity = Depends(get_current_user)):
    return inventory.list_orders(current_user)


@app.post("/orders", status_code=status.HTTP_201_CREATED, tags=["orders"])
def create_order(body: OrderIn, current_user: Identity = Depends(get_current_user)):
    return inventory.place_order(current_user, body.product_id, body.quantity)


@app.get("/orders/{order_id}", tags=["orders"])
def get_order(order_id: str, current_user: Identity = Depends(get_current_user)):
    return inventory.get_order(current_user, order_id)


@app.put("/orders/{order_id}", tags=["orders"])
def update_order(order_id: str, body: OrderUpdate, current_user: Identity = Depends(get_current_user)):
    order = inventory.get_order(current_user, order_id)
    if body.status is not None and not is_privileged(current_user):
        raise Forbidden("Only administrators can change order status")
    if body.quantity is not None:
        order = inventory.update_order_quantity(current_user, order_id, body.quantity)
    if body.status is not None:
        order = inventory.update_order_status(current_user, order_id, body.status)
    return order


@app.delete("/orders/{order_id}", tags=["orders"])
def delete_order(order_id: str, current_user: Identity = Depends(get_current_user)):
    inventory.delete_order(current_user, order_id)
    return {"message": "Order deleted"}


# Users (admin)
@app.get("/users", tags=["users"])
def admin_list_users(_: Identity = Depends(get_admin_user)):
    return list_users()


@app.post("/users", status_code=status.HTTP_201_CREATED, tags=["users"])
def admin_create_user(payload: RegisterPayload, _: Identity = Depends(get_admin_user)):
    identity = register_user(payload.name, payload.email, payload.password, payload.role or "CUSTOMER")
    return {"user": identity.model_dump()}


@app.delete("/users", tags=["users"])
def admin_delete_user(payload: UserDeletePayload, current_user: Identity = Depends(get_admin_user)):
    return _delete_user(payload.user_id, current_user)


@app.delete("/users/{user_id}", tags=["users"])
def admin_delete_user_by_id(user_id: str, current_user: Identity = Depends(get_admin_user)):
    return _delete_user(user_id, current_user)


def _delete_user(user_id: str, current_user: Identity):
    if not user_id.strip():
        raise ValidationError("User id is required")
    delete_user(user_id)
    logger.info("Admin %s deleted user %s", current_user.email, user_id)
    return {"message": "User deleted"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
