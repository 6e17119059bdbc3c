"""公開プランAPI"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.services import plan_catalog
from app.services.errors import PlanNotFound

router = APIRouter(prefix="/plans", tags=["plans"])


@router.get("")
def list_public_plans(db: Session = Depends(get_db)):
    """公開プラン一覧 (アクティブのみ)"""
    return [plan_catalog.serialize(p) for p in plan_catalog.list_active(db)]


@router.get("/{plan_key}")
def get_plan_detail(plan_key: str, db: Session = Depends(get_db)):
    plan = plan_catalog.get(db, plan_key)
    if not plan.is_active:
        raise PlanNotFound(plan_key)
    return plan_catalog.serialize(plan)
