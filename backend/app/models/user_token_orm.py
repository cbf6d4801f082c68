"""
Stored YouTube OAuth tokens.

Written by the sign-in flow (outside this service); read here only to decide
whether a user has a usable remote client.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, Text, DateTime, BigInteger

from backend.app.core.database import Base


class UserTokenORM(Base):
    __tablename__ = "user_tokens"

    user_id = Column(String(255), primary_key=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    scope = Column(Text, nullable=True)
    token_type = Column(String(32), nullable=True)
    expiry_date = Column(BigInteger, nullable=True)  # epoch millis
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<UserToken {self.user_id}>"
