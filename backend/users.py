"""
User directory: lookups the pass core needs, parent linking and per-user settings.
"""
import logging
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import update

from clock import utcnow
from errors import AuthorizationError, NotFoundError, ValidationError
from models import Role, Setting, User

logger = logging.getLogger(__name__)

# Client-facing setting name -> column
SETTING_FIELDS = {
    "theme": "theme",
    "notifications": "notifications",
    "biometric": "biometric",
    "locationTracking": "location_tracking",
    "emergencyAlerts": "emergency_alerts",
    "passNotifications": "pass_notifications",
    "autoLogout": "auto_logout",
}
THEMES = ("light", "dark")


class UserDirectory:

    def __init__(self, session_factory, clock: Callable = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def get_by_id(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        db = self.session_factory()
        try:
            return db.get(User, user_id)
        finally:
            db.close()

    def require(self, user_id: str) -> User:
        user = self.get_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def get_by_email(self, email: str) -> Optional[User]:
        db = self.session_factory()
        try:
            return db.query(User).filter(User.email == email).first()
        finally:
            db.close()

    def list_users(self) -> List[User]:
        db = self.session_factory()
        try:
            return db.query(User).order_by(User.created_at).all()
        finally:
            db.close()

    def find_children_of(self, parent_id: str) -> List[User]:
        db = self.session_factory()
        try:
            return db.query(User).filter(User.parent_id == parent_id).all()
        finally:
            db.close()

    def names_for(self, user_ids: Iterable[str]) -> Dict[str, str]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        db = self.session_factory()
        try:
            rows = db.query(User.id, User.name).filter(User.id.in_(ids)).all()
            return {row.id: row.name for row in rows}
        finally:
            db.close()

    def create_user(
        self,
        name: str,
        email: str,
        role: str = Role.STUDENT.value,
        parent_id: Optional[str] = None,
        fcm_token: Optional[str] = None,
    ) -> User:
        if not name or not email:
            raise ValidationError("name and email required")
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError("Invalid role specified")
        if self.get_by_email(email):
            raise ValidationError("Email already registered")

        user = User(
            name=name,
            email=email,
            role=role,
            parent_id=parent_id,
            fcm_token=fcm_token,
            created_at=self.clock(),
        )
        db = self.session_factory()
        try:
            db.add(user)
            db.commit()
            db.refresh(user)
            return user
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def link_student(self, parent_id: str, student_email: str) -> User:
        """
        Attach a student to the calling parent. The first parent to link
        wins; later attempts fail without touching the row.
        """
        if not student_email:
            raise ValidationError("Student email is required")
        parent = self.require(parent_id)
        if parent.role != Role.PARENT:
            raise AuthorizationError("Only parents can link students")

        db = self.session_factory()
        try:
            student = db.query(User).filter(
                User.email == student_email,
                User.role == Role.STUDENT,
            ).first()
            if not student:
                raise NotFoundError("Student not found")

            result = db.execute(
                update(User)
                .where(User.id == student.id, User.parent_id.is_(None))
                .values(parent_id=parent_id)
            )
            if result.rowcount != 1:
                db.rollback()
                current = db.get(User, student.id)
                db.refresh(current)
                if current.parent_id == parent_id:
                    raise ValidationError("Student already linked to you")
                raise ValidationError("Student already linked to another parent")
            db.commit()
            logger.info(f"Linked student {student.id} to parent {parent_id}")
            return db.get(User, student.id)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def register_device(self, user_id: str, token: str) -> User:
        if not token:
            raise ValidationError("token required")
        db = self.session_factory()
        try:
            user = db.get(User, user_id)
            if not user:
                raise NotFoundError("User not found")
            user.fcm_token = token
            db.commit()
            db.refresh(user)
            return user
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Settings

    def get_settings(self, user_id: str) -> Setting:
        """Return the user's settings, creating the defaults on first access."""
        db = self.session_factory()
        try:
            settings = self._load_settings(db, user_id)
            db.commit()
            db.refresh(settings)
            return settings
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def update_settings(self, user_id: str, updates: Dict) -> Setting:
        """
        Apply the known fields of ``updates`` (client names, e.g.
        ``locationTracking``). Unknown keys and None values are ignored.
        """
        patch = {
            SETTING_FIELDS[key]: value
            for key, value in (updates or {}).items()
            if key in SETTING_FIELDS and value is not None
        }
        if "theme" in patch and patch["theme"] not in THEMES:
            raise ValidationError(f"theme must be one of {', '.join(THEMES)}")
        for column, value in patch.items():
            if column != "theme" and not isinstance(value, bool):
                raise ValidationError(f"{column} must be a boolean")

        db = self.session_factory()
        try:
            settings = self._load_settings(db, user_id)
            for column, value in patch.items():
                setattr(settings, column, value)
            settings.updated_at = self.clock()
            db.commit()
            db.refresh(settings)
            logger.info(f"Settings updated for {user_id}: {sorted(patch)}")
            return settings
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _load_settings(self, db, user_id: str) -> Setting:
        if not db.get(User, user_id):
            raise NotFoundError("User not found")
        settings = db.query(Setting).filter(Setting.user_id == user_id).first()
        if settings is None:
            now = self.clock()
            settings = Setting(
                user_id=user_id,
                theme="light",
                notifications=True,
                biometric=False,
                location_tracking=True,
                emergency_alerts=True,
                pass_notifications=True,
                auto_logout=False,
                created_at=now,
                updated_at=now,
            )
            db.add(settings)
            db.flush()
        return settings
