from typing import List, Optional

from fastapi import Depends, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mercado_felino import cart, catalog, chat, orders
from mercado_felino.config import get_settings, log, setup_logging
from mercado_felino.database import Base, engine, get_db
from mercado_felino.errors import AuthError, ConflictError, register_error_handlers
from mercado_felino.models import User
from mercado_felino.schemas import (
    AIChatMessageRequest, AIChatReply, AIChatSessionOut, AuthResponse,
    CartAddRequest, CartLineOut, CartQuantityRequest, ChatBotReply,
    ChatHistoryEntry, ChatMessageRequest, LoginRequest, MessageOut,
    OrderCreate, OrderCreated, OrderOut, ProductCreate, ProductOut,
    ProductUpdate, RegisterRequest,
)
from mercado_felino.security import (
    create_access_token, current_user, enforce_policy, hash_password, verify_password,
)

setup_logging()

app = FastAPI(
    title="Mercado Felino",
    description="Cat supplies store: users, catalog, cart, orders and a shopping assistant chat",
    version="1.0.0",
    dependencies=[Depends(enforce_policy)],
)

Base.metadata.create_all(bind=engine)
log.info("Database tables ready")

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url] if settings.frontend_url else [],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)
register_error_handlers(app)


@app.get("/", tags=["Root"])
def read_root():
    return {"message": "Mercado Felino API is running"}


# Authentication
def _auth_response(user: User) -> AuthResponse:
    return AuthResponse(id=user.id, username=user.username, role=user.role, token=create_access_token(user.id))


def find_user(db: Session, username: str):
    return db.query(User).filter(User.username == username).first()


@app.post("/api/auth/register", tags=["Auth"], summary="Register a new user",
          response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register_user(request: RegisterRequest, db: Session = Depends(get_db)):
    if find_user(db, request.username):
        raise ConflictError("Username already exists")
    user = User(username=request.username, password_hash=hash_password(request.password), role=request.role)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Username already exists")
    db.refresh(user)
    log.info("User %s registered with role %s", user.id, user.role)
    return _auth_response(user)


@app.post("/api/auth/login", tags=["Auth"], summary="Authenticate and get a token", response_model=AuthResponse)
def login_user(request: LoginRequest, db: Session = Depends(get_db)):
    user = find_user(db, request.username)
    if not user or not verify_password(request.password, user.password_hash):
        log.warning("Failed login for username %r", request.username)
        raise AuthError("Invalid username or password")
    return _auth_response(user)


# Products
@app.get("/api/products", tags=["Products"], summary="List products", response_model=List[ProductOut])
def list_products(q: Optional[str] = None, db: Session = Depends(get_db)):
    return catalog.list_products(db, q)


@app.get("/api/products/{product_id}", tags=["Products"], summary="Get a product", response_model=ProductOut)
def get_product(product_id: int, db: Session = Depends(get_db)):
    return catalog.get_product(db, product_id)


@app.post("/api/products", tags=["Products"], summary="Add a new product",
          response_model=ProductOut, status_code=status.HTTP_201_CREATED)
def add_product(payload: ProductCreate, db: Session = Depends(get_db)):
    return catalog.create_product(db, payload)


@app.put("/api/products/{product_id}", tags=["Products"], summary="Update an existing product", response_model=ProductOut)
def update_product(product_id: int, payload: ProductUpdate, db: Session = Depends(get_db)):
    return catalog.update_product(db, product_id, payload)


@app.delete("/api/products/{product_id}", tags=["Products"], summary="Delete a product", response_model=MessageOut)
def delete_product(product_id: int, db: Session = Depends(get_db)):
    catalog.delete_product(db, product_id)
    return {"message": "Product deleted successfully"}


# Cart
@app.get("/api/cart", tags=["Cart"], summary="Get the cart", response_model=List[CartLineOut])
def get_cart(db: Session = Depends(get_db), user: User = Depends(current_user)):
    return cart.get_cart(db, user.id)


@app.post("/api/cart/add", tags=["Cart"], summary="Add a product to the cart", response_model=List[CartLineOut])
def add_to_cart(payload: CartAddRequest, db: Session = Depends(get_db), user: User = Depends(current_user)):
    return cart.add_item(db, user.id, payload.product_id, payload.quantity)


@app.put("/api/cart/update-quantity/{product_id}", tags=["Cart"], summary="Set a cart line quantity",
         response_model=List[CartLineOut])
def update_cart_quantity(product_id: int, payload: CartQuantityRequest,
                         db: Session = Depends(get_db), user: User = Depends(current_user)):
    return cart.update_quantity(db, user.id, product_id, payload.quantity)


@app.delete("/api/cart/remove/{product_id}", tags=["Cart"], summary="Remove a product from the cart",
            response_model=List[CartLineOut])
def remove_from_cart(product_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)):
    return cart.remove_item(db, user.id, product_id)


# Order Management
@app.post("/api/orders", tags=["Orders"], summary="Create a new order",
          response_model=OrderCreated, status_code=status.HTTP_201_CREATED)
def create_order(payload: OrderCreate, db: Session = Depends(get_db), user: User = Depends(current_user)):
    order = orders.create_order(db, user.id, payload)
    return {"message": "Order created successfully", "order": order}


@app.get("/api/orders/my-orders", tags=["Orders"], summary="List my orders", response_model=List[OrderOut])
def list_my_orders(db: Session = Depends(get_db), user: User = Depends(current_user)):
    return orders.get_user_orders(db, user.id)


@app.get("/api/orders", tags=["Orders"], summary="List all orders", response_model=List[OrderOut])
def list_all_orders(db: Session = Depends(get_db)):
    return orders.get_all_orders(db)


# Assistant chat
@app.post("/api/ai-chat/message", tags=["Chat"], summary="Send a message to the assistant", response_model=AIChatReply)
def send_ai_message(payload: AIChatMessageRequest, db: Session = Depends(get_db),
                    user: User = Depends(current_user), model: chat.ChatModel = Depends(chat.get_chat_model)):
    return {"reply": chat.send_message(db, user, payload.message_text, model)}


@app.get("/api/ai-chat/session", tags=["Chat"], summary="Get the full chat session", response_model=AIChatSessionOut)
def get_ai_session(db: Session = Depends(get_db), user: User = Depends(current_user)):
    session = chat.get_or_create_session(db, user.id)
    return {"history": chat.session_history(db, session)}


@app.post("/api/chat/message", tags=["Chat"], summary="Send a message to the assistant", response_model=ChatBotReply)
def send_chat_message(payload: ChatMessageRequest, db: Session = Depends(get_db),
                      user: User = Depends(current_user), model: chat.ChatModel = Depends(chat.get_chat_model)):
    return {"bot_response": chat.send_message(db, user, payload.message, model)}


@app.get("/api/chat/history", tags=["Chat"], summary="Get recent chat history", response_model=List[ChatHistoryEntry])
def get_chat_history(db: Session = Depends(get_db), user: User = Depends(current_user)):
    return chat.recent_history(db, user.id, get_settings().chat_history_view_turns)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
