"""
models.py — ORM entities.

Defines:
    • User    — local or SNS account
    • Post    — a short message with an optional image
    • Hashtag — unique tag extracted from post content
    • follow / post_hashtag association tables

Relationships are loaded explicitly (``selectinload``) by the queries that
need them; nothing lazy-loads inside an async request.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Table
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.birdnest.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


follow = Table(
    "follow",
    Base.metadata,
    Column("follower_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("following_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)

post_hashtag = Table(
    "post_hashtag",
    Base.metadata,
    Column("post_id", ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True),
    Column("hashtag_id", ForeignKey("hashtags.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(40), unique=True)
    nick: Mapped[str] = mapped_column(String(15))
    password: Mapped[Optional[str]] = mapped_column(String(100))
    provider: Mapped[str] = mapped_column(String(10), default="local")
    sns_id: Mapped[Optional[str]] = mapped_column(String(30))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    posts: Mapped[List["Post"]] = relationship(back_populates="user")
    followers: Mapped[List["User"]] = relationship(
        secondary=follow,
        primaryjoin=lambda: User.id == follow.c.following_id,
        secondaryjoin=lambda: User.id == follow.c.follower_id,
        back_populates="followings",
    )
    followings: Mapped[List["User"]] = relationship(
        secondary=follow,
        primaryjoin=lambda: User.id == follow.c.follower_id,
        secondaryjoin=lambda: User.id == follow.c.following_id,
        back_populates="followers",
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} nick={self.nick!r}>"


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    content: Mapped[str] = mapped_column(String(140))
    img: Mapped[Optional[str]] = mapped_column(String(200))
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    user: Mapped[User] = relationship(back_populates="posts")
    hashtags: Mapped[List["Hashtag"]] = relationship(
        secondary=post_hashtag, back_populates="posts",
    )


class Hashtag(Base):
    __tablename__ = "hashtags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(15), unique=True)

    posts: Mapped[List[Post]] = relationship(
        secondary=post_hashtag, back_populates="hashtags",
    )
