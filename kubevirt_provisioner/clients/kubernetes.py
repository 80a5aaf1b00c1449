import logging
import os
import ssl
from dataclasses import dataclass
from pathlib import Path

import httpx

from kubevirt_provisioner.clients.http import RequestFailure, RetryPolicy, request_with_retry
from kubevirt_provisioner.config import Settings
from kubevirt_provisioner.errors import (
    AlreadyExistsError,
    ConflictError,
    EngineError,
    NotFoundError,
    RemoteUnavailableError,
    ValidationError,
)
from kubevirt_provisioner.manifest import RemoteObject
from kubevirt_provisioner.metrics import metrics


logger = logging.getLogger(__name__)

VM_COLLECTION = "/apis/kubevirt.io/v1/namespaces/{namespace}/virtualmachines"
SECRET_COLLECTION = "/api/v1/namespaces/{namespace}/secrets"


@dataclass
class OperationTimeouts:
    read: float = 30.0
    create: float = 600.0
    update: float = 300.0
    delete: float = 300.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "OperationTimeouts":
        return cls(
            read=settings.read_timeout_sec,
            create=settings.create_timeout_sec,
            update=settings.update_timeout_sec,
            delete=settings.delete_timeout_sec,
        )


def translate_failure(operation: str, identity: str, exc: RequestFailure) -> EngineError:
    status = exc.status_code
    if status == 404:
        return NotFoundError(operation=operation, identity=identity, detail=exc.detail)
    if status == 409:
        if exc.reason == "AlreadyExists":
            return AlreadyExistsError(
                operation=operation, identity=identity, detail=exc.detail
            )
        return ConflictError(operation=operation, identity=identity, detail=exc.detail)
    if status in {400, 422}:
        return ValidationError(operation=operation, identity=identity, detail=exc.detail)
    return RemoteUnavailableError(
        operation=operation,
        identity=identity,
        detail=f"{exc.error_type}: {exc.detail}",
        status_code=status,
    )


class KubeVirtGateway:
    """Narrow client for VirtualMachine and Secret objects.

    Not-found and conflict responses are translated into the engine's error
    types; nothing is retried here beyond what ``retry`` allows for transport
    failures.
    """

    def __init__(
        self,
        base_url: str,
        retry: RetryPolicy,
        *,
        token: str | None = None,
        verify: bool | ssl.SSLContext = True,
        timeouts: OperationTimeouts | None = None,
        client: httpx.Client | None = None,
    ):
        self.timeouts = timeouts or OperationTimeouts()
        if client is None:
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            client = httpx.Client(
                base_url=base_url.rstrip("/"),
                headers=headers,
                verify=verify,
                timeout=self.timeouts.read,
            )
        self.client = client
        self.retry = retry

    def close(self) -> None:
        self.client.close()

    def _call(
        self,
        operation: str,
        identity: str,
        method: str,
        url: str,
        timeout: float,
        **kwargs,
    ) -> httpx.Response:
        metrics.inc("gateway_requests_total")
        logger.debug("gateway request op=%s id=%s method=%s url=%s", operation, identity, method, url)
        try:
            return request_with_retry(
                self.client, method, url, self.retry, timeout=timeout, **kwargs
            )
        except RequestFailure as exc:
            metrics.inc("gateway_errors_total")
            raise translate_failure(operation, identity, exc) from exc

    def get_vm(self, namespace: str, name: str) -> RemoteObject:
        url = f"{VM_COLLECTION.format(namespace=namespace)}/{name}"
        response = self._call("get_vm", f"{namespace}/{name}", "GET", url, self.timeouts.read)
        return RemoteObject.from_wire(response.json())

    def create_vm(self, manifest: RemoteObject) -> RemoteObject:
        url = VM_COLLECTION.format(namespace=manifest.namespace)
        response = self._call(
            "create_vm",
            manifest.identity,
            "POST",
            url,
            self.timeouts.create,
            json=manifest.to_wire(),
        )
        return RemoteObject.from_wire(response.json())

    def update_vm(self, manifest: RemoteObject) -> RemoteObject:
        if not manifest.resource_version:
            raise ValidationError(
                operation="update_vm",
                identity=manifest.identity,
                detail="manifest carries no resourceVersion; read the object before updating",
            )
        url = f"{VM_COLLECTION.format(namespace=manifest.namespace)}/{manifest.name}"
        response = self._call(
            "update_vm",
            manifest.identity,
            "PUT",
            url,
            self.timeouts.update,
            json=manifest.to_wire(),
        )
        return RemoteObject.from_wire(response.json())

    def delete_vm(self, namespace: str, name: str) -> bool:
        url = f"{VM_COLLECTION.format(namespace=namespace)}/{name}"
        try:
            self._call("delete_vm", f"{namespace}/{name}", "DELETE", url, self.timeouts.delete)
        except NotFoundError:
            logger.warning("virtual machine %s/%s not found during deletion", namespace, name)
            return False
        return True

    def get_secret(self, namespace: str, name: str) -> RemoteObject:
        url = f"{SECRET_COLLECTION.format(namespace=namespace)}/{name}"
        response = self._call("get_secret", f"{namespace}/{name}", "GET", url, self.timeouts.read)
        return RemoteObject.from_wire(response.json())

    def ensure_secret(self, manifest: RemoteObject) -> bool:
        """Create the Secret; an existing Secret of the same name counts as success."""
        url = SECRET_COLLECTION.format(namespace=manifest.namespace)
        try:
            self._call(
                "create_secret",
                manifest.identity,
                "POST",
                url,
                self.timeouts.create,
                json=manifest.to_wire(),
            )
        except AlreadyExistsError:
            return False
        return True

    def delete_secret(self, namespace: str, name: str) -> bool:
        url = f"{SECRET_COLLECTION.format(namespace=namespace)}/{name}"
        try:
            self._call("delete_secret", f"{namespace}/{name}", "DELETE", url, self.timeouts.delete)
        except NotFoundError:
            return False
        return True


def _in_cluster_url() -> str | None:
    host = os.environ.get("KUBERNETES_SERVICE_HOST")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
    if not host:
        return None
    if ":" in host:
        host = f"[{host}]"
    return f"https://{host}:{port}"


def _read_token(settings: Settings) -> str | None:
    if settings.api_token:
        return settings.api_token
    path = Path(settings.token_path)
    if path.is_file():
        return path.read_text(encoding="utf-8").strip()
    return None


def _tls_verify(settings: Settings) -> bool | ssl.SSLContext:
    if not settings.verify_tls:
        return False
    if settings.ca_cert_path and Path(settings.ca_cert_path).is_file():
        return ssl.create_default_context(cafile=settings.ca_cert_path)
    return True


def build_gateway(settings: Settings) -> KubeVirtGateway:
    base_url = settings.api_server_url or _in_cluster_url()
    if not base_url:
        raise RemoteUnavailableError(
            operation="configure",
            identity="api-server",
            detail="no api server url configured and not running in a cluster",
        )
    return KubeVirtGateway(
        base_url=base_url,
        retry=RetryPolicy(settings.retry_attempts, settings.retry_sleep_sec),
        token=_read_token(settings),
        verify=_tls_verify(settings),
        timeouts=OperationTimeouts.from_settings(settings),
    )
