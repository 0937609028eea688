import json
import logging
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mercado_felino.errors import ConflictError, NotFoundError
from mercado_felino.models import CartItem, Product
from mercado_felino.schemas import ProductCreate, ProductUpdate

log = logging.getLogger(__name__)


def list_products(db: Session, query: Optional[str] = None) -> List[Product]:
    """All products, or those whose name, description or category contain ``query``."""
    q = db.query(Product)
    if query:
        q = q.filter(or_(
            Product.name.icontains(query, autoescape=True),
            Product.description.icontains(query, autoescape=True),
            Product.category.icontains(query, autoescape=True),
        ))
    return q.order_by(Product.id).all()


def get_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


def _ensure_unique_name(db: Session, name: str, product_id: Optional[int] = None):
    existing = db.query(Product).filter(Product.name == name).first()
    if existing is not None and existing.id != product_id:
        raise ConflictError("A product with this name already exists")


def create_product(db: Session, payload: ProductCreate) -> Product:
    _ensure_unique_name(db, payload.name)
    product = Product(**payload.model_dump())
    db.add(product)
    db.commit()
    db.refresh(product)
    log.info("Product %s created (%s)", product.id, product.name)
    return product


def update_product(db: Session, product_id: int, payload: ProductUpdate) -> Product:
    product = get_product(db, product_id)
    changes = payload.model_dump(exclude_unset=True)
    # null means "keep"; 0 is a real price or stock
    changes = {k: v for k, v in changes.items() if v is not None}
    if "name" in changes:
        _ensure_unique_name(db, changes["name"], product.id)
    for field, value in changes.items():
        setattr(product, field, value)
    db.commit()
    db.refresh(product)
    return product


def delete_product(db: Session, product_id: int):
    product = get_product(db, product_id)
    db.query(CartItem).filter(CartItem.product_id == product.id).delete(synchronize_session=False)
    db.delete(product)
    db.commit()
    log.info("Product %s deleted", product_id)


def search_products(db: Session, query: Optional[str] = None) -> str:
    """Product lookup exposed to the chat model as a tool.

    Returns a compact JSON list, a "no results" sentence, or an error
    sentence. Lookup failures are reported back to the model, never raised.
    """
    try:
        products = list_products(db, query)
    except SQLAlchemyError as e:
        log.error("Product search for the chat model failed: %s", e)
        db.rollback()
        return f"Error al obtener productos: {e}"

    if not products:
        return f"No se encontraron productos con la consulta: {query or ''}"

    return json.dumps([
        {
            "id": p.id,
            "name": p.name,
            "price": p.price,
            "stock": p.stock,
            "description": p.description,
        }
        for p in products
    ], ensure_ascii=False)
