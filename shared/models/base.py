from sqlalchemy import Column, BigInteger, Integer, DateTime, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only autoincrements INTEGER primary keys
PrimaryKey = BigInteger().with_variant(Integer, "sqlite")


class BaseModel(Base):
    __abstract__ = True
    
    id = Column(PrimaryKey, primary_key=True, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
