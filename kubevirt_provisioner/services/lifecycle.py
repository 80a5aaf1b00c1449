import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from kubevirt_provisioner.config import Settings
from kubevirt_provisioner.errors import EngineError, NotFoundError, PartialCreationError
from kubevirt_provisioner.manifest import (
    MArray,
    MObject,
    MScalar,
    Node,
    RemoteObject,
    get_path,
    set_path,
)
from kubevirt_provisioner.metrics import metrics
from kubevirt_provisioner.schemas import DesiredSpec, VMStatus, id_parts, parse_desired_spec
from kubevirt_provisioner.services.builder import ManifestPlan, build
from kubevirt_provisioner.services.overflow import ensure_overflow_secret, overflow_secret_name
from kubevirt_provisioner.services.reconciler import observed_state, project
from kubevirt_provisioner.state_machine import (
    Action,
    Transition,
    TransitionState,
    can_transition,
    decide,
)


logger = logging.getLogger(__name__)


class Gateway(Protocol):
    def get_vm(self, namespace: str, name: str) -> RemoteObject: ...

    def create_vm(self, manifest: RemoteObject) -> RemoteObject: ...

    def update_vm(self, manifest: RemoteObject) -> RemoteObject: ...

    def delete_vm(self, namespace: str, name: str) -> bool: ...

    def ensure_secret(self, manifest: RemoteObject) -> bool: ...

    def delete_secret(self, namespace: str, name: str) -> bool: ...


@dataclass
class FieldPatch:
    """Explicit set of field paths written onto a fetched object."""

    changes: dict[tuple[str, ...], Any] = field(default_factory=dict)

    @classmethod
    def running(cls, value: bool) -> "FieldPatch":
        return cls({("spec", "running"): value})

    def apply(self, remote: RemoteObject) -> RemoteObject:
        patched = remote.copy()
        for path, value in self.changes.items():
            set_path(patched.root, path, value)
        return patched


def is_subset(wanted: Node | None, actual: Node | None) -> bool:
    """True when every field of ``wanted`` is present and equal in ``actual``.

    Fields the API server adds on its own (defaults, status) are ignored.
    """
    if isinstance(wanted, MObject):
        if not isinstance(actual, MObject):
            return False
        return all(is_subset(value, actual.get(key)) for key, value in wanted.fields.items())
    if isinstance(wanted, MArray):
        if not isinstance(actual, MArray) or len(wanted) != len(actual):
            return False
        return all(is_subset(w, a) for w, a in zip(wanted.items, actual.items))
    if isinstance(wanted, MScalar):
        if not isinstance(actual, MScalar):
            return False
        if isinstance(wanted.value, bool) or isinstance(actual.value, bool):
            return wanted.value is actual.value
        if wanted.value == actual.value:
            return True
        # quantities may come back as strings ("2") where we sent ints
        return str(wanted.value) == str(actual.value)
    return actual is None


class LifecycleService:
    def __init__(self, gateway: Gateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    def _resolve(self, desired: DesiredSpec | dict) -> DesiredSpec:
        if not isinstance(desired, DesiredSpec):
            desired = parse_desired_spec(desired)
        return desired.with_namespace(self.settings.default_namespace)

    def _get_or_none(self, namespace: str, name: str) -> RemoteObject | None:
        try:
            return self.gateway.get_vm(namespace, name)
        except NotFoundError:
            return None

    def apply(
        self,
        desired: DesiredSpec | dict,
        prior: TransitionState = TransitionState.ABSENT,
        prior_id: str | None = None,
    ) -> VMStatus:
        """Execute the transition requested by ``desired``.

        A request equal to the prior transition is executed again, so repeated
        delivery of the same call converges on the same remote state.
        """
        desired = self._resolve(desired)
        try:
            return self._apply(desired, TransitionState(prior), prior_id)
        except EngineError:
            metrics.inc("lifecycle_errors_total")
            raise

    def _apply(
        self, desired: DesiredSpec, prior: TransitionState, prior_id: str | None
    ) -> VMStatus:
        namespace, name = desired.namespace or "", desired.name
        transition = desired.transition
        # a read-through never mutates, not even the prior identity
        if transition is None:
            return self._read_through(namespace, name, None)

        if prior_id and prior_id != desired.identity:
            self._replace_identity(prior_id, desired.identity)
            prior = TransitionState.ABSENT

        if transition == Transition.DELETE:
            self._delete_objects(namespace, name)
            return project(namespace, name, TransitionState.ABSENT, transition=transition)

        current = self._get_or_none(namespace, name)
        action, target = decide(transition, current is not None)
        if target is not None and not can_transition(prior.value, target.value):
            logger.warning(
                "unexpected lifecycle transition vm=%s prior=%s target=%s transition=%s",
                desired.identity,
                prior.value,
                target.value,
                transition.value,
            )
        logger.info(
            "applying transition vm=%s transition=%s action=%s prior=%s",
            desired.identity,
            transition.value,
            action.value,
            prior.value,
        )

        if action == Action.CREATE:
            created = self._create(desired)
            return project(namespace, name, TransitionState.CREATED, created, transition)
        if action == Action.NOOP or current is None:
            return project(namespace, name, TransitionState.STOPPED, transition=transition)

        patch = FieldPatch.running(action == Action.SET_RUNNING)
        updated = self.gateway.update_vm(patch.apply(current))
        metrics.inc("vm_update_total")
        logger.info(
            "set running vm=%s running=%s resource_version=%s",
            desired.identity,
            action == Action.SET_RUNNING,
            updated.resource_version,
        )
        return project(namespace, name, target or observed_state(updated), updated, transition)

    def _create(self, desired: DesiredSpec) -> RemoteObject:
        plan = build(desired, self.settings)
        if plan.overflow is not None:
            ensure_overflow_secret(self.gateway, plan.overflow)
        logger.info("creating virtual machine vm=%s", plan.vm.identity)
        try:
            created = self.gateway.create_vm(plan.vm)
        except EngineError as exc:
            if plan.secret is not None:
                raise PartialCreationError(
                    operation="create_vm",
                    identity=plan.vm.identity,
                    detail=exc.detail,
                    secret_name=plan.secret.name or "",
                ) from exc
            raise
        metrics.inc("vm_create_total")
        logger.info("successfully created virtual machine vm=%s", plan.vm.identity)
        return created

    def _delete_objects(self, namespace: str, name: str) -> bool:
        logger.info("deleting virtual machine vm=%s/%s", namespace, name)
        deleted = self.gateway.delete_vm(namespace, name)
        if deleted:
            metrics.inc("vm_delete_total")
        if self.settings.delete_overflow_secret:
            self.gateway.delete_secret(
                namespace, overflow_secret_name(self.settings.secret_prefix, name)
            )
        return deleted

    def _replace_identity(self, prior_id: str, new_id: str) -> None:
        old_namespace, old_name = id_parts(prior_id)
        logger.info("identity changed, replacing vm old=%s new=%s", prior_id, new_id)
        self._delete_objects(old_namespace, old_name)

    def _read_through(
        self, namespace: str, name: str, transition: Transition | None
    ) -> VMStatus:
        current = self._get_or_none(namespace, name)
        if current is None:
            logger.warning(
                "virtual machine %s/%s not found, removing from state", namespace, name
            )
            return project(namespace, name, TransitionState.ABSENT, transition=transition)
        return project(namespace, name, observed_state(current), current, transition)

    def create(self, desired: DesiredSpec | dict) -> VMStatus:
        """Create the VM unless a non-start transition is requested.

        A ``stop`` or ``delete`` request at creation time records the state
        without touching the cluster.
        """
        desired = self._resolve(desired)
        namespace, name = desired.namespace or "", desired.name
        if desired.transition not in (None, Transition.START):
            return project(namespace, name, TransitionState.ABSENT, transition=desired.transition)
        created = self._create(desired)
        return project(namespace, name, TransitionState.CREATED, created, desired.transition)

    def update(self, desired: DesiredSpec | dict, prior_id: str | None = None) -> VMStatus:
        """Bring the remote VM in line with the full desired spec.

        The running flag follows the remote copy unless a start/stop is
        requested. Nothing is written when the managed fields already match.
        A ``delete`` transition deletes instead of updating, and a missing VM
        is created for ``start``, left absent for ``stop`` and reported as
        not found otherwise.
        """
        desired = self._resolve(desired)
        namespace, name = desired.namespace or "", desired.name
        transition = desired.transition
        replaced = bool(prior_id and prior_id != desired.identity)
        if replaced:
            self._replace_identity(prior_id, desired.identity)

        if transition == Transition.DELETE:
            self._delete_objects(namespace, name)
            return project(namespace, name, TransitionState.ABSENT, transition=transition)
        if replaced:
            created = self._create(desired)
            return project(namespace, name, TransitionState.CREATED, created, transition)

        current = self._get_or_none(namespace, name)
        if current is None:
            if transition == Transition.START:
                created = self._create(desired)
                return project(namespace, name, TransitionState.CREATED, created, transition)
            if transition == Transition.STOP:
                return project(namespace, name, TransitionState.STOPPED, transition=transition)
            raise NotFoundError(
                operation="update_vm",
                identity=desired.identity,
                detail="virtual machine not found",
            )

        plan = build(desired, self.settings)
        wanted = plan.vm
        if transition in (Transition.START, Transition.STOP):
            wanted.running = transition == Transition.START
        else:
            wanted.running = bool(current.running)

        if self._in_sync(wanted, current):
            logger.info("virtual machine already up to date vm=%s", desired.identity)
            return project(namespace, name, observed_state(current), current, desired.transition)

        if plan.overflow is not None:
            ensure_overflow_secret(self.gateway, plan.overflow)
        self._carry_metadata(wanted, current)
        logger.info("updating virtual machine vm=%s", desired.identity)
        updated = self.gateway.update_vm(wanted)
        metrics.inc("vm_update_total")
        return project(namespace, name, observed_state(updated), updated, desired.transition)

    @staticmethod
    def _in_sync(wanted: RemoteObject, current: RemoteObject) -> bool:
        if not is_subset(wanted.root.get("spec"), current.root.get("spec")):
            return False
        return is_subset(
            get_path(wanted.root, "metadata", "labels"),
            get_path(current.root, "metadata", "labels"),
        )

    @staticmethod
    def _carry_metadata(wanted: RemoteObject, current: RemoteObject) -> None:
        wanted.resource_version = current.resource_version
        metadata = wanted.root.child("metadata")
        annotations = get_path(current.root, "metadata", "annotations")
        if isinstance(annotations, MObject) and "annotations" not in metadata:
            metadata.set("annotations", annotations)
        labels = get_path(current.root, "metadata", "labels")
        if isinstance(labels, MObject):
            merged = metadata.child("labels")
            for key, value in labels.fields.items():
                if key not in merged:
                    merged.set(key, value)

    def read(self, object_id: str, prior_transition: Transition | None = None) -> VMStatus:
        namespace, name = id_parts(object_id)
        return self._read_through(namespace, name, prior_transition)

    def exists(self, object_id: str) -> bool:
        namespace, name = id_parts(object_id)
        return self._get_or_none(namespace, name) is not None

    def import_state(self, object_id: str) -> VMStatus:
        namespace, name = id_parts(object_id)
        current = self.gateway.get_vm(namespace, name)
        return project(namespace, name, observed_state(current), current)

    def delete(self, object_id: str) -> VMStatus:
        namespace, name = id_parts(object_id)
        self._delete_objects(namespace, name)
        return project(namespace, name, TransitionState.ABSENT, transition=Transition.DELETE)

    def plan(self, desired: DesiredSpec | dict) -> ManifestPlan:
        return build(self._resolve(desired), self.settings)
