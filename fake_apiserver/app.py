"""In-memory stand-in for the parts of the Kubernetes API the provisioner uses.

Objects are versioned with a global resourceVersion counter. Creates of an
existing name fail with ``AlreadyExists``, updates with a stale version fail
with ``Conflict`` and missing objects return ``NotFound``, all as Kubernetes
``Status`` bodies.
"""

import copy
import uuid
from datetime import UTC, datetime
from threading import Lock

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from fake_apiserver.config import get_settings


app = FastAPI(title="Fake Kubernetes API Server")

VM_PLURAL = "virtualmachines"
SECRET_PLURAL = "secrets"

_lock = Lock()
_objects: dict[tuple[str, str, str], dict] = {}
_faults: dict[tuple[str, str], int] = {}
_requests: list[tuple[str, str, str]] = []
_resource_version = get_settings().initial_resource_version


def reset() -> None:
    global _resource_version
    with _lock:
        _objects.clear()
        _faults.clear()
        _requests.clear()
        _resource_version = get_settings().initial_resource_version


def inject_fault(method: str, plural: str, status_code: int) -> None:
    with _lock:
        _faults[(method.upper(), plural)] = status_code


def requests_seen() -> list[tuple[str, str, str]]:
    with _lock:
        return list(_requests)


def stored(plural: str, namespace: str, name: str) -> dict | None:
    with _lock:
        found = _objects.get((plural, namespace, name))
        return copy.deepcopy(found) if found else None


def _status(code: int, reason: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=code,
        content={
            "kind": "Status",
            "apiVersion": "v1",
            "metadata": {},
            "status": "Failure",
            "message": message,
            "reason": reason,
            "code": code,
        },
    )


def _next_version() -> str:
    global _resource_version
    _resource_version += 1
    return str(_resource_version)


def _record(method: str, plural: str, target: str) -> JSONResponse | None:
    _requests.append((method, plural, target))
    code = _faults.get((method, plural))
    if code is None:
        return None
    return _status(code, "InternalError" if code >= 500 else "BadRequest", "injected fault")


def _get(plural: str, namespace: str, name: str):
    with _lock:
        fault = _record("GET", plural, f"{namespace}/{name}")
        if fault:
            return fault
        found = _objects.get((plural, namespace, name))
        if found is None:
            return _status(404, "NotFound", f'{plural} "{name}" not found')
        return copy.deepcopy(found)


def _create(plural: str, namespace: str, body: dict):
    metadata = body.setdefault("metadata", {})
    name = metadata.get("name")
    with _lock:
        fault = _record("POST", plural, f"{namespace}/{name}")
        if fault:
            return fault
        if not name:
            return _status(422, "Invalid", "metadata.name: Required value")
        if (plural, namespace, name) in _objects:
            return _status(409, "AlreadyExists", f'{plural} "{name}" already exists')
        metadata["namespace"] = namespace
        metadata["uid"] = str(uuid.uuid4())
        metadata["creationTimestamp"] = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        metadata["resourceVersion"] = _next_version()
        _objects[(plural, namespace, name)] = copy.deepcopy(body)
    return JSONResponse(status_code=201, content=body)


def _replace(plural: str, namespace: str, name: str, body: dict):
    metadata = body.setdefault("metadata", {})
    with _lock:
        fault = _record("PUT", plural, f"{namespace}/{name}")
        if fault:
            return fault
        if metadata.get("name") != name:
            return _status(400, "BadRequest", "the name of the object does not match the URL")
        existing = _objects.get((plural, namespace, name))
        if existing is None:
            return _status(404, "NotFound", f'{plural} "{name}" not found')
        version = metadata.get("resourceVersion")
        if not version:
            return _status(
                422, "Invalid", "metadata.resourceVersion: Invalid value: must be specified for an update"
            )
        if version != existing["metadata"]["resourceVersion"]:
            return _status(
                409,
                "Conflict",
                f'Operation cannot be fulfilled on {plural} "{name}": the object has been modified',
            )
        metadata["namespace"] = namespace
        metadata["uid"] = existing["metadata"]["uid"]
        metadata["creationTimestamp"] = existing["metadata"]["creationTimestamp"]
        metadata["resourceVersion"] = _next_version()
        _objects[(plural, namespace, name)] = copy.deepcopy(body)
    return body


def _delete(plural: str, namespace: str, name: str):
    with _lock:
        fault = _record("DELETE", plural, f"{namespace}/{name}")
        if fault:
            return fault
        if _objects.pop((plural, namespace, name), None) is None:
            return _status(404, "NotFound", f'{plural} "{name}" not found')
    return {"kind": "Status", "apiVersion": "v1", "status": "Success", "details": {"name": name}}


@app.get("/healthz")
def healthz() -> dict:
    settings = get_settings()
    return {
        "status": "ok",
        "cluster": settings.cluster_name,
        "addr": f"{settings.bind_host}:{settings.bind_port}",
    }


@app.get("/apis/kubevirt.io/v1/namespaces/{namespace}/virtualmachines/{name}")
def get_vm(namespace: str, name: str):
    return _get(VM_PLURAL, namespace, name)


@app.post("/apis/kubevirt.io/v1/namespaces/{namespace}/virtualmachines")
def create_vm(namespace: str, body: dict = Body(...)):
    return _create(VM_PLURAL, namespace, body)


@app.put("/apis/kubevirt.io/v1/namespaces/{namespace}/virtualmachines/{name}")
def replace_vm(namespace: str, name: str, body: dict = Body(...)):
    return _replace(VM_PLURAL, namespace, name, body)


@app.delete("/apis/kubevirt.io/v1/namespaces/{namespace}/virtualmachines/{name}")
def delete_vm(namespace: str, name: str):
    return _delete(VM_PLURAL, namespace, name)


@app.get("/api/v1/namespaces/{namespace}/secrets/{name}")
def get_secret(namespace: str, name: str):
    return _get(SECRET_PLURAL, namespace, name)


@app.post("/api/v1/namespaces/{namespace}/secrets")
def create_secret(namespace: str, body: dict = Body(...)):
    return _create(SECRET_PLURAL, namespace, body)


@app.delete("/api/v1/namespaces/{namespace}/secrets/{name}")
def delete_secret(namespace: str, name: str):
    return _delete(SECRET_PLURAL, namespace, name)
