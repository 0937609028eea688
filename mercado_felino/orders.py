import logging
from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from mercado_felino.errors import (
    AppError, ForbiddenError, InsufficientStockError, InternalError, NotFoundError,
)
from mercado_felino.models import Order, OrderItem, Product
from mercado_felino.schemas import OrderCreate

log = logging.getLogger(__name__)


def create_order(db: Session, requesting_user_id: int, payload: OrderCreate) -> Order:
    if requesting_user_id != payload.user_id:
        raise ForbiddenError("Access denied. User id does not match")

    try:
        order = Order(user_id=payload.user_id, total_amount=payload.total_amount)
        for position, item in enumerate(payload.items):
            product = (
                db.query(Product)
                .filter(Product.id == item.product_id)
                .with_for_update()
                .first()
            )
            if product is None:
                raise NotFoundError(f"Product with id {item.product_id} not found")
            if product.stock < item.quantity:
                raise InsufficientStockError(
                    f"Insufficient stock for product: {product.name}. "
                    f"Available: {product.stock}, requested: {item.quantity}"
                )
            product.stock -= item.quantity
            order.items.append(OrderItem(
                position=position,
                product_id=product.id,
                quantity=item.quantity,
                price=product.price,
            ))
            db.flush()
        db.add(order)
        db.commit()
    except AppError as e:
        db.rollback()
        log.warning("Order for user %s rolled back: %s", payload.user_id, e.detail)
        raise
    except SQLAlchemyError as e:
        db.rollback()
        log.error("Order for user %s rolled back on database error: %s", payload.user_id, e)
        raise InternalError(f"Error creating order: {e}")

    order = _with_details(db.query(Order)).filter(Order.id == order.id).one()
    log.info("Order %s committed for user %s (%d lines)", order.id, order.user_id, len(order.items))
    return order


def _with_details(query):
    return query.options(
        selectinload(Order.items).selectinload(OrderItem.product),
        selectinload(Order.user),
    )


def get_user_orders(db: Session, user_id: int) -> List[Order]:
    return _with_details(db.query(Order)).filter(Order.user_id == user_id).order_by(Order.id).all()


def get_all_orders(db: Session) -> List[Order]:
    return _with_details(db.query(Order)).order_by(Order.id).all()
