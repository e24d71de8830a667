"""
FastAPI dependencies for the permission catalog.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.core.database.engine import get_db
from access_engine.features.permissions.catalog import PermissionCatalog


async def get_catalog(db: AsyncSession = Depends(get_db)) -> PermissionCatalog:
    return PermissionCatalog(db)
