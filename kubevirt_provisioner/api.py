from functools import lru_cache

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from kubevirt_provisioner.clients.kubernetes import KubeVirtGateway, build_gateway
from kubevirt_provisioner.config import get_settings
from kubevirt_provisioner.errors import (
    ConflictError,
    EngineError,
    NotFoundError,
    PartialCreationError,
    RemoteUnavailableError,
    ValidationError,
)
from kubevirt_provisioner.metrics import metrics
from kubevirt_provisioner.schemas import (
    ApplyRequest,
    DesiredSpec,
    VMStatus,
    build_id,
)
from kubevirt_provisioner.services.lifecycle import LifecycleService
from kubevirt_provisioner.state_machine import Transition


router = APIRouter()

ERROR_STATUS_CODES: list[tuple[type[EngineError], int]] = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (PartialCreationError, 502),
    (RemoteUnavailableError, 502),
]


@lru_cache(maxsize=1)
def get_gateway() -> KubeVirtGateway:
    return build_gateway(get_settings())


def get_lifecycle() -> LifecycleService:
    return LifecycleService(get_gateway(), get_settings())


def engine_error_status(exc: EngineError) -> int:
    for error_cls, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def engine_error_handler(_request: Request, exc: EngineError) -> JSONResponse:
    return JSONResponse(status_code=engine_error_status(exc), content=exc.to_dict())


def _bind_identity(desired: DesiredSpec, namespace: str, name: str) -> DesiredSpec:
    if desired.name != name or (desired.namespace and desired.namespace != namespace):
        raise ValidationError(
            operation="bind_identity",
            identity=build_id(namespace, name),
            detail=f"body identity {desired.identity} does not match the request path",
        )
    return desired.with_namespace(namespace)


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.post("/v1/vms/apply", response_model=VMStatus)
def apply_vm(
    req: ApplyRequest, lifecycle: LifecycleService = Depends(get_lifecycle)
) -> VMStatus:
    return lifecycle.apply(req.desired, req.prior_state, req.prior_id)


@router.post("/v1/vms/plan")
def plan_vm(
    desired: DesiredSpec, lifecycle: LifecycleService = Depends(get_lifecycle)
) -> dict:
    plan = lifecycle.plan(desired)
    return {
        "vm": plan.vm.to_wire(),
        "secret": plan.secret.to_wire() if plan.secret else None,
    }


@router.post("/v1/vms", response_model=VMStatus, status_code=201)
def create_vm(
    desired: DesiredSpec, lifecycle: LifecycleService = Depends(get_lifecycle)
) -> VMStatus:
    return lifecycle.create(desired)


@router.get("/v1/vms/{namespace}/{name}", response_model=VMStatus)
def read_vm(
    namespace: str,
    name: str,
    prior_transition: Transition | None = None,
    lifecycle: LifecycleService = Depends(get_lifecycle),
) -> VMStatus:
    return lifecycle.read(build_id(namespace, name), prior_transition)


@router.get("/v1/vms/{namespace}/{name}/exists")
def vm_exists(
    namespace: str, name: str, lifecycle: LifecycleService = Depends(get_lifecycle)
) -> dict[str, bool]:
    return {"exists": lifecycle.exists(build_id(namespace, name))}


@router.post("/v1/vms/{namespace}/{name}/import", response_model=VMStatus)
def import_vm(
    namespace: str, name: str, lifecycle: LifecycleService = Depends(get_lifecycle)
) -> VMStatus:
    return lifecycle.import_state(build_id(namespace, name))


@router.put("/v1/vms/{namespace}/{name}", response_model=VMStatus)
def update_vm(
    namespace: str,
    name: str,
    desired: DesiredSpec,
    prior_id: str | None = None,
    lifecycle: LifecycleService = Depends(get_lifecycle),
) -> VMStatus:
    return lifecycle.update(_bind_identity(desired, namespace, name), prior_id)


@router.delete("/v1/vms/{namespace}/{name}", response_model=VMStatus)
def delete_vm(
    namespace: str, name: str, lifecycle: LifecycleService = Depends(get_lifecycle)
) -> VMStatus:
    return lifecycle.delete(build_id(namespace, name))
