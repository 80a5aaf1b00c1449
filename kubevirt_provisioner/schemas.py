import logging
import re
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kubevirt_provisioner.errors import ValidationError
from kubevirt_provisioner.state_machine import Transition, TransitionState


logger = logging.getLogger(__name__)

DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
QUANTITY_RE = re.compile(r"^[0-9]+(\.[0-9]+)?([KMGTPE]i|[mkMGTPE])?$")
TOLERATION_EFFECTS = {"NoSchedule", "PreferNoSchedule", "NoExecute"}


def _check_dns_label(value: str, field_name: str) -> str:
    if len(value) > 63 or not DNS_LABEL_RE.match(value):
        raise ValueError(
            f"{field_name} {value!r} must be a DNS-1123 label "
            "(lowercase alphanumerics and '-', at most 63 characters)"
        )
    return value


def build_id(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def id_parts(object_id: str) -> tuple[str, str]:
    parts = object_id.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValidationError(
            operation="parse_id",
            identity=object_id,
            detail="invalid ID format, expected namespace/name",
        )
    return parts[0], parts[1]


class TolerationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str | None = None
    operator: str | None = None
    value: str | None = None
    effect: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _derive_operator(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        value = data.get("value") or None
        data["value"] = value
        operator = data.get("operator") or ("Equal" if value else "Exists")
        if operator not in {"Equal", "Exists"}:
            raise ValueError(f"unsupported toleration operator {operator!r}")
        if operator == "Exists" and value:
            raise ValueError("toleration operator Exists must not carry a value")
        data["operator"] = operator
        return data

    def to_manifest(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.key:
            out["key"] = self.key
        out["operator"] = self.operator or "Exists"
        if self.value:
            out["value"] = self.value
        if self.effect:
            out["effect"] = self.effect
        return out


def parse_toleration(raw: str) -> TolerationRule:
    """Parse the compact ``key[=value]:effect`` form.

    Strings without an effect separator fall back to a key-only ``Exists``
    toleration with the ``NoSchedule`` effect.
    """
    if ":" not in raw:
        logger.warning(
            "toleration has no effect, falling back to key-only NoSchedule raw=%s",
            raw,
        )
        return TolerationRule(key=raw, operator="Exists", effect="NoSchedule")
    key_value, effect = raw.split(":", 1)
    if effect and effect not in TOLERATION_EFFECTS:
        logger.warning("toleration effect not recognised raw=%s effect=%s", raw, effect)
    key, _, value = key_value.partition("=")
    return TolerationRule(key=key or None, value=value or None, effect=effect or None)


class DeviceRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str | None = None
    device_name: str = Field(min_length=1)
    vendor_id: str | None = None
    product_id: str | None = None


class NetworkInterface(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    network_name: str = Field(default="pod", min_length=1)


class DesiredSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str | None = None
    image: str = Field(min_length=1)
    memory: str
    cpu: int = Field(ge=1)

    machine_type: str | None = None
    architecture: str | None = None
    hugepages: str | None = None
    sidecar_hook: str | None = None

    node_selector: dict[str, str] = Field(default_factory=dict)
    tolerations: list[TolerationRule] = Field(default_factory=list)
    affinity: dict[str, Any] | None = None

    host_devices: list[DeviceRequest] = Field(default_factory=list)
    usb_devices: list[DeviceRequest] = Field(default_factory=list)
    pci_devices: list[DeviceRequest] = Field(default_factory=list)
    gpu_devices: list[DeviceRequest] = Field(default_factory=list)
    network_interfaces: list[NetworkInterface] = Field(default_factory=list)

    cloud_init: str | None = None
    agent_token: str | None = None
    transition: Transition | None = None

    @field_validator("name")
    @classmethod
    def _name_is_label(cls, value: str) -> str:
        return _check_dns_label(value, "name")

    @field_validator("namespace")
    @classmethod
    def _namespace_is_label(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        return _check_dns_label(value, "namespace")

    @field_validator("memory", "hugepages")
    @classmethod
    def _is_quantity(cls, value: str | None) -> str | None:
        if value is not None and not QUANTITY_RE.match(value):
            raise ValueError(f"{value!r} is not a resource quantity")
        return value

    @field_validator("tolerations", mode="before")
    @classmethod
    def _parse_tolerations(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [parse_toleration(item) if isinstance(item, str) else item for item in value]

    @field_validator(
        "host_devices", "usb_devices", "pci_devices", "gpu_devices", mode="before"
    )
    @classmethod
    def _parse_devices(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [{"device_name": item} if isinstance(item, str) else item for item in value]

    @field_validator("network_interfaces", mode="before")
    @classmethod
    def _parse_interfaces(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        parsed = []
        for item in value:
            if isinstance(item, str):
                name, _, network = item.partition(":")
                item = {"name": name, "network_name": network or "pod"}
            parsed.append(item)
        return parsed

    @field_validator("transition", mode="before")
    @classmethod
    def _blank_transition(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def with_namespace(self, default_namespace: str) -> "DesiredSpec":
        if self.namespace:
            return self
        return self.model_copy(update={"namespace": default_namespace})

    @property
    def identity(self) -> str:
        return build_id(self.namespace or "", self.name)


def parse_desired_spec(payload: dict) -> DesiredSpec:
    try:
        return DesiredSpec.model_validate(payload)
    except pydantic.ValidationError as exc:
        identity = build_id(
            str(payload.get("namespace") or ""), str(payload.get("name") or "")
        )
        raise ValidationError(
            operation="validate", identity=identity, detail=str(exc)
        ) from exc


class VMStatus(BaseModel):
    id: str | None
    name: str
    namespace: str
    state: TransitionState
    vm_status: str
    creation_timestamp: str | None = None
    workspace_transition: Transition | None = None
    running: bool | None = None
    image: str | None = None
    memory: str | None = None
    cpu: int | None = None
    resource_version: str | None = None


class ApplyRequest(BaseModel):
    desired: DesiredSpec
    prior_state: TransitionState = TransitionState.ABSENT
    prior_id: str | None = None
