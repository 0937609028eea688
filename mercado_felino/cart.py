from typing import List, Optional

from sqlalchemy.orm import Session

from mercado_felino.catalog import get_product
from mercado_felino.errors import InsufficientStockError, NotFoundError, ValidationError
from mercado_felino.models import CartItem, User


def _get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _find_line(user: User, product_id: int) -> Optional[CartItem]:
    return next((line for line in user.cart_items if line.product_id == product_id), None)


def get_cart(db: Session, user_id: int) -> List[CartItem]:
    user = _get_user(db, user_id)
    return list(user.cart_items)


def add_item(db: Session, user_id: int, product_id: int, quantity: int) -> List[CartItem]:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    user = _get_user(db, user_id)
    product = get_product(db, product_id)
    # Checked, not reserved
    if product.stock < quantity:
        raise InsufficientStockError(
            f"Not enough stock for {product.name}. Available stock: {product.stock}"
        )

    line = _find_line(user, product_id)
    if line is not None:
        line.quantity += quantity
    else:
        user.cart_items.append(CartItem(product_id=product.id, quantity=quantity))
    db.commit()
    db.refresh(user)
    return list(user.cart_items)


def update_quantity(db: Session, user_id: int, product_id: int, quantity: int) -> List[CartItem]:
    if quantity < 0:
        raise ValidationError("Quantity must be 0 or greater")
    user = _get_user(db, user_id)
    product = get_product(db, product_id)
    line = _find_line(user, product_id)
    if line is None:
        raise NotFoundError("Product not found in cart")

    increase = quantity - line.quantity
    if increase > 0 and product.stock < increase:
        raise InsufficientStockError(
            f"Not enough stock for {product.name}. Available stock: {product.stock}"
        )

    if quantity == 0:
        user.cart_items.remove(line)
    else:
        line.quantity = quantity
    db.commit()
    db.refresh(user)
    return list(user.cart_items)


def remove_item(db: Session, user_id: int, product_id: int) -> List[CartItem]:
    user = _get_user(db, user_id)
    line = _find_line(user, product_id)
    if line is None:
        raise NotFoundError("Product not found in cart")
    user.cart_items.remove(line)
    db.commit()
    db.refresh(user)
    return list(user.cart_items)
