from fastapi import APIRouter, Depends, Query, Request

from core.config import get_settings
from core.contracts import paginated
from core.deps import get_actor_id, get_lifecycle_manager
from core.lifecycle import ContractLifecycleManager
from schemas.access_log import AccessLogCreate, AccessLogOut, AuditEntryOut
from schemas.contract import (
    ContractCreate,
    ContractOut,
    DashboardOverviewOut,
    ExecuteRequest,
    ExecutedRuleOut,
    ExecutionOut,
    RevokeRequest,
    RuleWarningOut,
)

router = APIRouter(prefix="/consent", tags=["consent"])
settings = get_settings()


def _client_ip(request: Request | None) -> str | None:
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()[:64]
    client = getattr(request, "client", None)
    return getattr(client, "host", None)


def _user_agent(request: Request | None) -> str | None:
    if request is None:
        return None
    return request.headers.get("user-agent")


def _dump(schema, item) -> dict:
    return schema.model_validate(item).model_dump(mode="json")


@router.post("/contracts", response_model=ContractOut, status_code=201)
def create_contract(
    payload: ContractCreate,
    manager: ContractLifecycleManager = Depends(get_lifecycle_manager),
    actor_id: str = Depends(get_actor_id),
):
    return manager.create(
        patient_id=payload.patient_id,
        requester_id=payload.requester_id,
        data_types=payload.data_types,
        purpose=payload.purpose,
        duration=payload.duration,
        conditions=payload.conditions,
        rules=[rule.model_dump() for rule in payload.rules],
        actor_id=actor_id,
    )


@router.get("/contracts/patient/{patient_id}", response_model=dict, description="Supports pagination with limit/offset.")
def list_patient_contracts(
    patient_id: str,
    status: str | None = None,
    limit: int = Query(default=settings.default_page_limit, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    manager: ContractLifecycleManager = Depends(get_lifecycle_manager),
):
    page = manager.list_for_patient(patient_id, status=status, limit=limit, offset=offset)
    return paginated(
        [_dump(ContractOut, item) for item in page.items],
        limit=page.limit,
        offset=page.offset,
        count=page.count,
    )


@router.get("/contracts/{contract_id}", response_model=ContractOut)
def get_contract(
    contract_id: str,
    manager: ContractLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.get(contract_id)


@router.post(
    "/contracts/{contract_id}/execute",
    response_model=ExecutionOut,
    description="Evaluates the contract's rules for the requested action. Concurrent status changes yield 409.",
)
def execute_contract(
    contract_id: str,
    payload: ExecuteRequest,
    manager: ContractLifecycleManager = Depends(get_lifecycle_manager),
    actor_id: str = Depends(get_actor_id),
):
    result = manager.execute(contract_id, action=payload.action, parameters=payload.parameters, actor_id=actor_id)
    return ExecutionOut(
        contract_id=result.contract_id,
        action=result.action,
        executed_rules=[ExecutedRuleOut.model_validate(item) for item in result.executed_rules],
        actions=result.actions,
        warnings=[RuleWarningOut.model_validate(item) for item in result.warnings],
        status_changed=result.status_changed,
        previous_status=result.previous_status,
        new_status=result.new_status,
        notifications_queued=result.notifications_queued,
        notifications_delivered=result.notifications_delivered,
        executed_at=result.executed_at,
    )


@router.post("/contracts/{contract_id}/revoke", response_model=ContractOut)
def revoke_contract(
    contract_id: str,
    payload: RevokeRequest | None = None,
    manager: ContractLifecycleManager = Depends(get_lifecycle_manager),
    actor_id: str = Depends(get_actor_id),
):
    reason = payload.reason if payload is not None else None
    return manager.revoke(contract_id, reason=reason, actor_id=actor_id)


@router.post("/contracts/{contract_id}/access-logs", response_model=AccessLogOut, status_code=201)
def record_access(
    contract_id: str,
    payload: AccessLogCreate,
    request: Request = None,
    manager: ContractLifecycleManager = Depends(get_lifecycle_manager),
    actor_id: str = Depends(get_actor_id),
):
    return manager.log_access(
        contract_id,
        actor_id=actor_id,
        action=payload.action,
        data_type=payload.data_type,
        resource_id=payload.resource_id,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
        success=payload.success,
        error_message=payload.error_message,
    )


@router.get("/contracts/{contract_id}/access-logs", response_model=dict, description="Newest first.")
def list_access_logs(
    contract_id: str,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    manager: ContractLifecycleManager = Depends(get_lifecycle_manager),
):
    page = manager.access_logs(contract_id, limit=limit, offset=offset)
    return paginated(
        [_dump(AccessLogOut, item) for item in page.items],
        limit=page.limit,
        offset=page.offset,
        count=page.count,
    )


@router.get("/contracts/{contract_id}/audit", response_model=dict, description="Oldest first.")
def list_audit_trail(
    contract_id: str,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    manager: ContractLifecycleManager = Depends(get_lifecycle_manager),
):
    page = manager.audit_trail(contract_id, limit=limit, offset=offset)
    return paginated(
        [_dump(AuditEntryOut, item) for item in page.items],
        limit=page.limit,
        offset=page.offset,
        count=page.count,
    )


@router.get("/dashboard/overview", response_model=DashboardOverviewOut)
def dashboard_overview(manager: ContractLifecycleManager = Depends(get_lifecycle_manager)):
    return manager.overview()
