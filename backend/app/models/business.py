from sqlalchemy import Column, Integer, String, DateTime, func
from app.core.database import Base


class Business(Base):
    """課金対象のテナント (店舗)"""
    __tablename__ = "businesses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, comment="店舗名")
    contact_email = Column(String(255), nullable=False, index=True, comment="請求連絡先メールアドレス")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
