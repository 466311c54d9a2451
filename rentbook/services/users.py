from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from rentbook.core.config import Settings
from rentbook.core.errors import InvalidArgument, NotFound
from rentbook.db.session import Database
from rentbook.models.user import User
from rentbook.utils.validators import normalize_phone


class UserService:
    def __init__(self, database: Database, settings: Settings, clock: Callable[[], datetime] = datetime.now):
        self.database = database
        self.settings = settings
        self.clock = clock

    def get_or_create_user(self, telegram_id: int, username: str = "", first_name: str = "",
                           last_name: str = "", language_code: str = "") -> User:
        """Register a chat user on first contact, refresh profile fields afterwards."""

        def _run(db: Session) -> User:
            user = db.query(User).filter(User.telegram_id == telegram_id).first()
            if user is None:
                user = User(telegram_id=telegram_id, is_manager=self.settings.is_manager(telegram_id))
                db.add(user)
            user.username = username or user.username or ""
            user.first_name = first_name or user.first_name or ""
            user.last_name = last_name or user.last_name or ""
            user.language_code = language_code or user.language_code or ""
            user.last_activity = self.clock()
            db.flush()
            return user

        return self.database.transaction(_run)

    def get_by_telegram_id(self, telegram_id: int) -> Optional[User]:
        with self.database.session() as db:
            return db.query(User).filter(User.telegram_id == telegram_id).first()

    def update_phone(self, telegram_id: int, phone: str) -> User:
        try:
            phone = normalize_phone(phone)
        except ValueError as e:
            raise InvalidArgument(str(e)) from e
        return self._update(telegram_id, phone=phone)

    def set_blacklisted(self, telegram_id: int, blacklisted: bool) -> User:
        return self._update(telegram_id, is_blacklisted=blacklisted)

    def set_manager(self, telegram_id: int, manager: bool) -> User:
        return self._update(telegram_id, is_manager=manager)

    def _update(self, telegram_id: int, **values) -> User:
        def _run(db: Session) -> User:
            user = db.query(User).filter(User.telegram_id == telegram_id).first()
            if user is None:
                raise NotFound(f"user {telegram_id} not found")
            for key, value in values.items():
                setattr(user, key, value)
            db.flush()
            return user

        return self.database.transaction(_run)

    def is_blacklisted(self, telegram_id: int, db: Optional[Session] = None) -> bool:
        if self.settings.is_blacklisted(telegram_id):
            return True
        if db is not None:
            return self._blacklisted_in(db, telegram_id)
        with self.database.session() as own:
            return self._blacklisted_in(own, telegram_id)

    @staticmethod
    def _blacklisted_in(db: Session, telegram_id: int) -> bool:
        flag = db.query(User.is_blacklisted).filter(User.telegram_id == telegram_id).scalar()
        return bool(flag)

    def is_manager(self, telegram_id: int) -> bool:
        if self.settings.is_manager(telegram_id):
            return True
        user = self.get_by_telegram_id(telegram_id)
        return bool(user and user.is_manager)

    def list_managers(self) -> List[int]:
        with self.database.session() as db:
            rows = db.query(User.telegram_id).filter(User.is_manager.is_(True)).all()
        return sorted(set(self.settings.managers) | {r[0] for r in rows})
