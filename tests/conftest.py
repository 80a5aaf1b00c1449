import copy

import pytest

from kubevirt_provisioner.config import Settings
from kubevirt_provisioner.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    RemoteUnavailableError,
)
from kubevirt_provisioner.manifest import RemoteObject
from kubevirt_provisioner.metrics import metrics


class FakeGateway:
    """Records every call and keeps objects in memory with resource versions."""

    def __init__(self, fail_create_vm: bool = False, fail_update_vm: bool = False):
        self.calls: list[tuple[str, str]] = []
        self.vms: dict[tuple[str, str], dict] = {}
        self.secrets: dict[tuple[str, str], dict] = {}
        self.fail_create_vm = fail_create_vm
        self.fail_update_vm = fail_update_vm
        self.version = 100

    def _bump(self, raw: dict) -> dict:
        self.version += 1
        raw.setdefault("metadata", {})["resourceVersion"] = str(self.version)
        raw["metadata"].setdefault("creationTimestamp", "2026-01-02T03:04:05Z")
        return raw

    def seed_vm(self, namespace: str, name: str, running: bool, **spec_extra) -> dict:
        raw = {
            "apiVersion": "kubevirt.io/v1",
            "kind": "VirtualMachine",
            "metadata": {"name": name, "namespace": namespace, "labels": {"app": "kubevirt-vm"}},
            "spec": {
                "running": running,
                "template": {
                    "spec": {
                        "domain": {"resources": {"requests": {"memory": "2Gi", "cpu": "2"}}},
                        "volumes": [{"name": "containerdisk", "containerDisk": {"image": "img:latest"}}],
                    }
                },
                **spec_extra,
            },
        }
        self.vms[(namespace, name)] = self._bump(raw)
        return copy.deepcopy(raw)

    def calls_named(self, method: str) -> list[str]:
        return [target for name, target in self.calls if name == method]

    def get_vm(self, namespace: str, name: str) -> RemoteObject:
        self.calls.append(("get_vm", f"{namespace}/{name}"))
        raw = self.vms.get((namespace, name))
        if raw is None:
            raise NotFoundError(operation="get_vm", identity=f"{namespace}/{name}", detail="HTTP 404")
        return RemoteObject.from_wire(copy.deepcopy(raw))

    def create_vm(self, manifest: RemoteObject) -> RemoteObject:
        self.calls.append(("create_vm", manifest.identity))
        if self.fail_create_vm:
            raise RemoteUnavailableError(
                operation="create_vm", identity=manifest.identity, detail="HTTP 503: unavailable"
            )
        key = (manifest.namespace, manifest.name)
        if key in self.vms:
            raise AlreadyExistsError(operation="create_vm", identity=manifest.identity, detail="HTTP 409")
        raw = self._bump(manifest.to_wire())
        self.vms[key] = raw
        return RemoteObject.from_wire(copy.deepcopy(raw))

    def update_vm(self, manifest: RemoteObject) -> RemoteObject:
        self.calls.append(("update_vm", manifest.identity))
        key = (manifest.namespace, manifest.name)
        existing = self.vms.get(key)
        if existing is None:
            raise NotFoundError(operation="update_vm", identity=manifest.identity, detail="HTTP 404")
        if self.fail_update_vm or manifest.resource_version != existing["metadata"]["resourceVersion"]:
            raise ConflictError(
                operation="update_vm", identity=manifest.identity, detail="the object has been modified"
            )
        raw = self._bump(manifest.to_wire())
        self.vms[key] = raw
        return RemoteObject.from_wire(copy.deepcopy(raw))

    def delete_vm(self, namespace: str, name: str) -> bool:
        self.calls.append(("delete_vm", f"{namespace}/{name}"))
        return self.vms.pop((namespace, name), None) is not None

    def ensure_secret(self, manifest: RemoteObject) -> bool:
        self.calls.append(("ensure_secret", manifest.identity))
        key = (manifest.namespace, manifest.name)
        if key in self.secrets:
            return False
        self.secrets[key] = manifest.to_wire()
        return True

    def delete_secret(self, namespace: str, name: str) -> bool:
        self.calls.append(("delete_secret", f"{namespace}/{name}"))
        return self.secrets.pop((namespace, name), None) is not None


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, default_namespace="terraform-dev")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()
