# wallet_service/crud/user.py
from sqlalchemy.orm import Session
from wallet_service.models.user import User


def get_user_by_id(db: Session, user_id: int) -> User | None:
    """Получает пользователя по его первичному ключу."""
    return db.query(User).filter(User.id == user_id).first()

def user_exists(db: Session, user_id: int) -> bool:
    return db.query(User.id).filter(User.id == user_id).first() is not None

def create_user(db: Session, user_id: int | None = None, username: str | None = None, is_admin: bool = False) -> User:
    """Создает пользователя. Используется при синхронизации с основным сервисом и в тестах."""
    db_user = User(id=user_id, username=username, is_admin=is_admin)
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user
