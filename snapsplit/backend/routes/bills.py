from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from snapsplit.backend.deps import get_bill_service, get_engine
from snapsplit.backend.utils.envelope import error, ok
from snapsplit.common.delta_models import DeltaSyncRequest
from snapsplit.common.errors import SnapSplitError

router = APIRouter(prefix="/bills", tags=["bills"])


class CreateBillBody(BaseModel):
    name: str = Field(min_length=1)
    local_id: Optional[str] = None


class ClaimBody(BaseModel):
    display_name: Optional[str] = None


@router.post("")
async def create_bill(body: CreateBillBody, service=Depends(get_bill_service)):
    return ok(await service.create_bill(body.name, body.local_id), status=201)


@router.get("/{bill_id}")
async def get_bill(bill_id: str, service=Depends(get_bill_service)):
    try:
        return ok(await service.get_bill(bill_id))
    except SnapSplitError as e:
        return error(e.message, code=e.code, status=e.status_code)


@router.delete("/{bill_id}")
async def delete_bill(bill_id: str, service=Depends(get_bill_service)):
    deleted = await service.delete_bill(bill_id)
    return ok({"deleted": deleted})


@router.post("/{bill_id}/sync")
async def sync_bill(
    bill_id: str,
    body: DeltaSyncRequest,
    x_user_id: Optional[str] = Header(default=None),
    engine=Depends(get_engine),
):
    try:
        response = await engine.reconcile(bill_id, body, acting_user_id=x_user_id)
    except SnapSplitError as e:
        return error(e.message, code=e.code, status=e.status_code)
    return ok(response.to_wire())


@router.get("/{bill_id}/settlement")
async def bill_settlement(bill_id: str, service=Depends(get_bill_service)):
    try:
        return ok(await service.settlement(bill_id))
    except SnapSplitError as e:
        return error(e.message, code=e.code, status=e.status_code)


@router.post("/{bill_id}/members/{member_id}/claim")
async def claim_member(
    bill_id: str,
    member_id: str,
    body: Optional[ClaimBody] = None,
    x_user_id: Optional[str] = Header(default=None),
    service=Depends(get_bill_service),
):
    if not x_user_id:
        return error("X-User-Id header is required to claim a member", code="UNAUTHENTICATED", status=401)
    try:
        data = await service.claim_member(bill_id, member_id, x_user_id, body.display_name if body else None)
    except SnapSplitError as e:
        return error(e.message, code=e.code, status=e.status_code)
    return ok(data)


@router.post("/{bill_id}/members/{member_id}/unclaim")
async def unclaim_member(
    bill_id: str,
    member_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service=Depends(get_bill_service),
):
    try:
        data = await service.unclaim_member(bill_id, member_id, x_user_id)
    except SnapSplitError as e:
        return error(e.message, code=e.code, status=e.status_code)
    return ok(data)
