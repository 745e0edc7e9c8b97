"""
Finstat analytics data.
"""

from __future__ import annotations
from typing import Dict, Any

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    BigInteger,
    Text,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

class User(Base):
    """
    Jellyfin user metadata.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    jellyfin_id = Column(String(128), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    is_admin = Column(Boolean, default=False)
    primary_image_tag = Column(String(128), nullable=True)
    last_activity_at = Column(BigInteger, nullable=True)
    total_plays = Column(Integer, default=0)
    archived = Column(Boolean, default=False)

    __table_args__ = (
        Index("idx_user_archived", "archived"),
        Index("idx_user_total_plays", "total_plays"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jellyfin_id": self.jellyfin_id,
            "name": self.name,
            "is_admin": self.is_admin,
            "primary_image_tag": self.primary_image_tag,
            "last_activity_at": self.last_activity_at,
            "total_plays": self.total_plays,
            "archived": self.archived,
        }


class Library(Base):
    """
    Jellyfin library/media folder.
    """
    __tablename__ = "libraries"

    id = Column(Integer, primary_key=True)
    jellyfin_id = Column(String(128), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    type = Column(String(64), nullable=True)
    image_url = Column(String(1024), nullable=True)
    tracked = Column(Boolean, default=True)
    item_count = Column(Integer, default=0)
    season_count = Column(Integer, default=0)
    episode_count = Column(Integer, default=0)
    total_plays = Column(Integer, default=0)
    total_playback_seconds = Column(BigInteger, default=0)
    last_played_item_name = Column(String(512), nullable=True)
    archived = Column(Boolean, default=False)

    items = relationship("Item", back_populates="library")

    __table_args__ = (
        Index("idx_library_archived", "archived"),
        Index("idx_library_total_plays", "total_plays"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jellyfin_id": self.jellyfin_id,
            "name": self.name,
            "type": self.type,
            "image_url": self.image_url,
            "tracked": self.tracked,
            "item_count": self.item_count,
            "season_count": self.season_count,
            "episode_count": self.episode_count,
            "total_plays": self.total_plays,
            "total_playback_seconds": self.total_playback_seconds,
            "last_played_item_name": self.last_played_item_name,
            "archived": self.archived,
        }


class Item(Base):
    """
    Top level library entry: movie, series, music video, ...
    """
    __tablename__ = "items"

    id = Column(Integer, primary_key=True)
    jellyfin_id = Column(String(128), nullable=False, unique=True)
    library_id = Column(
        Integer,
        ForeignKey("libraries.id", ondelete="CASCADE"),
        nullable=False
    )
    parent_id = Column(String(128), nullable=True)
    name = Column(String(512), nullable=False)
    type = Column(String(64), nullable=True)
    primary_image_hash = Column(String(255), nullable=True)
    production_year = Column(Integer, nullable=True)
    runtime_seconds = Column(Integer, default=0)
    size_bytes = Column(BigInteger, default=0)
    date_created = Column(BigInteger, nullable=True)
    play_count = Column(Integer, default=0)
    archived = Column(Boolean, default=False)

    library = relationship("Library", back_populates="items")

    __table_args__ = (
        Index("idx_item_library_id", "library_id"),
        Index("idx_item_archived", "archived"),
        Index("idx_item_play_count", "play_count"),
        Index("idx_item_name", "name"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jellyfin_id": self.jellyfin_id,
            "library_id": self.library_id,
            "parent_id": self.parent_id,
            "name": self.name,
            "type": self.type,
            "primary_image_hash": self.primary_image_hash,
            "production_year": self.production_year,
            "runtime_seconds": self.runtime_seconds,
            "size_bytes": self.size_bytes,
            "date_created": self.date_created,
            "play_count": self.play_count,
            "archived": self.archived,
        }


class Season(Base):
    __tablename__ = "seasons"

    id = Column(Integer, primary_key=True)
    jellyfin_id = Column(String(128), nullable=False, unique=True)
    series_id = Column(String(128), nullable=False)
    name = Column(String(512), nullable=True)
    index_number = Column(Integer, nullable=True)
    archived = Column(Boolean, default=False)

    __table_args__ = (
        Index("idx_season_series_id", "series_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jellyfin_id": self.jellyfin_id,
            "series_id": self.series_id,
            "name": self.name,
            "index_number": self.index_number,
            "archived": self.archived,
        }


class Episode(Base):
    __tablename__ = "episodes"

    id = Column(Integer, primary_key=True)
    jellyfin_id = Column(String(128), nullable=False, unique=True)
    series_id = Column(String(128), nullable=False)
    season_id = Column(String(128), nullable=True)
    name = Column(String(512), nullable=True)
    index_number = Column(Integer, nullable=True)
    parent_index_number = Column(Integer, nullable=True)
    runtime_seconds = Column(Integer, default=0)
    size_bytes = Column(BigInteger, default=0)
    date_created = Column(BigInteger, nullable=True)
    archived = Column(Boolean, default=False)

    __table_args__ = (
        Index("idx_episode_series_id", "series_id"),
        Index("idx_episode_season_id", "season_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jellyfin_id": self.jellyfin_id,
            "series_id": self.series_id,
            "season_id": self.season_id,
            "name": self.name,
            "index_number": self.index_number,
            "parent_index_number": self.parent_index_number,
            "runtime_seconds": self.runtime_seconds,
            "size_bytes": self.size_bytes,
            "date_created": self.date_created,
            "archived": self.archived,
        }


class PlaybackActivity(Base):
    """
    Individual playback event.

    For episodes now_playing_item_id holds the series id; episode_id and
    season_id identify what was actually watched.
    """
    __tablename__ = "playback_activity"

    id = Column(Integer, primary_key=True)
    external_id = Column(String(255), nullable=False, unique=True)
    source = Column(String(32), nullable=False, default="session")
    user_id = Column(String(128), nullable=False)
    user_name = Column(String(255), nullable=True)
    now_playing_item_id = Column(String(128), nullable=False)
    now_playing_item_name = Column(String(512), nullable=True)
    season_id = Column(String(128), nullable=True)
    episode_id = Column(String(128), nullable=True)
    client = Column(String(255), nullable=True)
    device_name = Column(String(255), nullable=True)
    play_method = Column(String(64), nullable=True)
    play_duration = Column(Integer, default=0)
    activity_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_playback_user_id", "user_id"),
        Index("idx_playback_item_id", "now_playing_item_id"),
        Index("idx_playback_episode_id", "episode_id"),
        Index("idx_playback_activity_at", "activity_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to dictionary for API responses.
        """
        return {
            "id": self.id,
            "external_id": self.external_id,
            "source": self.source,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "now_playing_item_id": self.now_playing_item_id,
            "now_playing_item_name": self.now_playing_item_name,
            "season_id": self.season_id,
            "episode_id": self.episode_id,
            "client": self.client,
            "device_name": self.device_name,
            "play_method": self.play_method,
            "play_duration": self.play_duration,
            "activity_at": self.activity_at,
        }


class TaskLog(Base):
    """
    Records sync operations and other background tasks.
    """
    __tablename__ = "task_logging"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    type = Column(String(64), nullable=False)
    execution_type = Column(String(32), nullable=False)
    duration_ms = Column(Integer, default=0)
    started_at = Column(BigInteger, nullable=False)
    finished_at = Column(BigInteger, nullable=True)
    result = Column(String(32), nullable=False)
    log_json = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_task_started_at", "started_at"),
        Index("idx_task_result", "result"),
    )

    def to_dict(self) -> Dict[str, Any]:
        import json
        log_data = None
        if self.log_json:
            try:
                log_data = json.loads(self.log_json)
            except ValueError:
                log_data = self.log_json

        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "execution_type": self.execution_type,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "result": self.result,
            "log": log_data,
        }
