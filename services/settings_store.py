"""
Settings storage using SQLAlchemy with Fernet encryption for sensitive fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, Column, Integer, String
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from cryptography.fernet import Fernet, InvalidToken

Base = declarative_base()

MASKED_API_KEY = "*" * 32


# -------------------------
# ORM Model
# -------------------------

class Settings(Base):
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True)
    jf_host = Column(String(1024), nullable=True)
    jf_api_key_encrypted = Column(String(4096), nullable=True)
    preferred_admin_id = Column(String(128), nullable=True)
    sync_interval = Column(Integer, default=1800)
    monitor_interval = Column(Integer, default=5)
    last_playback_import_rowid = Column(Integer, nullable=True)

    def to_dict(self, fernet: Optional[Fernet] = None) -> Dict[str, Any]:
        """
        Convert to dict. If fernet provided, decrypt jf_api_key.
        """
        api_key_plain = None

        if fernet and self.jf_api_key_encrypted:
            try:
                api_key_plain = fernet.decrypt(
                    self.jf_api_key_encrypted.encode("utf-8")
                ).decode("utf-8")
            except InvalidToken:
                api_key_plain = None

        return {
            "jf_host": self.jf_host,
            "jf_api_key": api_key_plain,
            "preferred_admin_id": self.preferred_admin_id,
            "sync_interval": self.sync_interval,
            "monitor_interval": self.monitor_interval,
        }


# -------------------------
# Service
# -------------------------

@dataclass
class SettingsService:
    database_url: str
    encryption_key_path: str

    def __post_init__(self) -> None:
        self.engine = create_engine(self.database_url, future=True)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
        )
        Base.metadata.create_all(self.engine)
        self.fernet = Fernet(self._load_or_create_key())

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """
        Context manager for database sessions with auto-commit.
        """
        session: Session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _load_or_create_key(self) -> bytes:
        """
        Load a Fernet key from disk, or create one if it does not exist.
        """
        if not self.encryption_key_path or self.encryption_key_path == ":memory:":
            return Fernet.generate_key()

        key_file = Path(self.encryption_key_path)
        if key_file.exists():
            return key_file.read_bytes()

        key = Fernet.generate_key()
        try:
            key_file.write_bytes(key)
        except OSError:
            pass
        return key

    def _get_or_create_row(self, session: Session) -> Settings:
        """
        Retrieve the single Settings row, creating it if missing.
        """
        obj = session.query(Settings).first()
        if obj:
            return obj

        obj = Settings()
        session.add(obj)
        session.flush()
        return obj

    # -------------------------
    # Public API
    # -------------------------

    def get(self) -> Dict[str, Any]:
        """
        Retrieve current settings.
        """
        with self._session() as session:
            settings = self._get_or_create_row(session)
            return settings.to_dict(self.fernet)

    def get_masked(self) -> Dict[str, Any]:
        """
        Retrieve current settings with the API key replaced by a mask.
        """
        data = self.get()
        data["jf_api_key"] = MASKED_API_KEY if data.get("jf_api_key") else None
        return data

    def is_configured(self) -> bool:
        """
        True once both a Jellyfin URL and an API key are stored.
        """
        s = self.get()
        return bool((s.get("jf_host") or "").strip() and (s.get("jf_api_key") or "").strip())

    def update(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update settings. Handles encryption for jf_api_key automatically.
        Unknown keys are ignored.
        """
        allowed = {
            "jf_host",
            "jf_api_key",
            "preferred_admin_id",
            "sync_interval",
            "monitor_interval",
        }
        clean = {k: v for k, v in values.items() if k in allowed}

        with self._session() as session:
            settings = self._get_or_create_row(session)

            if isinstance(clean.get("jf_host"), str):
                settings.jf_host = clean["jf_host"].strip() or None

            if "preferred_admin_id" in clean:
                admin = clean["preferred_admin_id"]
                settings.preferred_admin_id = (
                    admin.strip() or None if isinstance(admin, str) else None
                )

            for key in ("sync_interval", "monitor_interval"):
                if key in clean:
                    try:
                        val = int(clean[key])
                        if val > 0:
                            setattr(settings, key, val)
                    except (TypeError, ValueError):
                        pass

            if "jf_api_key" in clean:
                api = clean["jf_api_key"]

                # Prevent accidental overwrite with masked value
                if isinstance(api, str) and api == MASKED_API_KEY:
                    pass
                elif isinstance(api, str) and api.strip():
                    settings.jf_api_key_encrypted = self.fernet.encrypt(
                        api.strip().encode("utf-8")
                    ).decode("utf-8")
                else:
                    settings.jf_api_key_encrypted = None

            return settings.to_dict(self.fernet)

    def get_preferred_admin(self) -> Optional[str]:
        """
        Jellyfin user id used for user-scoped endpoints, if one was chosen.
        """
        return self.get().get("preferred_admin_id")

    def set_last_playback_import_rowid(self, rowid: int) -> None:
        """
        Store the highest Playback Reporting rowid imported so far.
        """
        with self._session() as session:
            settings = self._get_or_create_row(session)
            settings.last_playback_import_rowid = int(rowid)

    def get_last_playback_import_rowid(self) -> Optional[int]:
        """
        Retrieve the highest Playback Reporting rowid imported so far.
        """
        with self._session() as session:
            settings = session.query(Settings).first()
            return settings.last_playback_import_rowid if settings else None
