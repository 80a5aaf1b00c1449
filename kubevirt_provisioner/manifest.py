"""Typed manifest tree.

The Kubernetes API speaks loosely typed JSON. Inside the engine manifests are
kept as a small tagged tree (``MObject`` / ``MArray`` / ``MScalar``) so the
builder and lifecycle code manipulate typed values; ``from_wire`` and
``to_wire`` are the only conversion points to and from plain JSON data.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Union


Scalar = Union[str, int, float, bool, None]


@dataclass
class MScalar:
    value: Scalar


@dataclass
class MArray:
    items: list["Node"] = field(default_factory=list)

    def append(self, value: Any) -> None:
        self.items.append(wrap(value))

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


@dataclass
class MObject:
    fields: dict[str, "Node"] = field(default_factory=dict)

    def get(self, key: str) -> "Node | None":
        return self.fields.get(key)

    def set(self, key: str, value: Any) -> None:
        self.fields[key] = wrap(value)

    def child(self, key: str) -> "MObject":
        """Return the object stored under ``key``, creating it when missing."""
        node = self.fields.get(key)
        if isinstance(node, MObject):
            return node
        created = MObject()
        self.fields[key] = created
        return created

    def array(self, key: str) -> MArray:
        node = self.fields.get(key)
        if isinstance(node, MArray):
            return node
        created = MArray()
        self.fields[key] = created
        return created

    def pop(self, key: str) -> "Node | None":
        return self.fields.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self.fields


Node = Union[MObject, MArray, MScalar]


def wrap(value: Any) -> Node:
    if isinstance(value, (MObject, MArray, MScalar)):
        return value
    if isinstance(value, dict):
        return MObject({str(key): wrap(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return MArray([wrap(item) for item in value])
    if value is None or isinstance(value, (str, int, float, bool)):
        return MScalar(value)
    raise TypeError(f"unsupported manifest value type {type(value).__name__}")


def from_wire(raw: Any) -> Node:
    return wrap(raw)


def to_wire(node: Node) -> Any:
    if isinstance(node, MObject):
        return {key: to_wire(item) for key, item in node.fields.items()}
    if isinstance(node, MArray):
        return [to_wire(item) for item in node.items]
    return node.value


def obj(**fields: Any) -> MObject:
    return MObject({key: wrap(value) for key, value in fields.items()})


def get_path(node: Node | None, *keys: str | int) -> Node | None:
    current = node
    for key in keys:
        if isinstance(key, int):
            if not isinstance(current, MArray) or not -len(current) <= key < len(current):
                return None
            current = current.items[key]
        else:
            if not isinstance(current, MObject):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def get_scalar(node: Node | None, *keys: str | int, default: Scalar = None) -> Scalar:
    found = get_path(node, *keys)
    if isinstance(found, MScalar):
        return found.value
    return default


def set_path(root: MObject, keys: tuple[str, ...], value: Any) -> None:
    if not keys:
        raise ValueError("set_path requires at least one key")
    parent = root
    for key in keys[:-1]:
        parent = parent.child(key)
    parent.set(keys[-1], value)


@dataclass
class RemoteObject:
    root: MObject

    @classmethod
    def from_wire(cls, raw: dict) -> "RemoteObject":
        node = from_wire(raw)
        if not isinstance(node, MObject):
            raise TypeError("remote object must be a JSON object")
        return cls(node)

    def to_wire(self) -> dict:
        return to_wire(self.root)

    def copy(self) -> "RemoteObject":
        return RemoteObject(copy.deepcopy(self.root))

    @property
    def api_version(self) -> str | None:
        return _as_str(get_scalar(self.root, "apiVersion"))

    @property
    def kind(self) -> str | None:
        return _as_str(get_scalar(self.root, "kind"))

    @property
    def name(self) -> str | None:
        return _as_str(get_scalar(self.root, "metadata", "name"))

    @property
    def namespace(self) -> str | None:
        return _as_str(get_scalar(self.root, "metadata", "namespace"))

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def resource_version(self) -> str | None:
        return _as_str(get_scalar(self.root, "metadata", "resourceVersion"))

    @resource_version.setter
    def resource_version(self, value: str | None) -> None:
        metadata = self.root.child("metadata")
        if value is None:
            metadata.pop("resourceVersion")
        else:
            metadata.set("resourceVersion", value)

    @property
    def creation_timestamp(self) -> str | None:
        return _as_str(get_scalar(self.root, "metadata", "creationTimestamp"))

    @property
    def labels(self) -> dict[str, str]:
        node = get_path(self.root, "metadata", "labels")
        if not isinstance(node, MObject):
            return {}
        return {key: str(to_wire(value)) for key, value in node.fields.items()}

    @property
    def running(self) -> bool | None:
        value = get_scalar(self.root, "spec", "running")
        return value if isinstance(value, bool) else None

    @running.setter
    def running(self, value: bool) -> None:
        set_path(self.root, ("spec", "running"), value)

    @property
    def spec(self) -> MObject:
        return self.root.child("spec")


def _as_str(value: Scalar) -> str | None:
    if value is None:
        return None
    return str(value)
