import logging

from kubevirt_provisioner.manifest import MArray, MObject, RemoteObject, get_path, get_scalar
from kubevirt_provisioner.schemas import VMStatus, build_id
from kubevirt_provisioner.state_machine import Transition, TransitionState


logger = logging.getLogger(__name__)

STATUS_LABELS = {
    TransitionState.ABSENT: "Absent",
    TransitionState.CREATED: "Created",
    TransitionState.RUNNING: "Running",
    TransitionState.STOPPED: "Stopped",
}


def observed_state(remote: RemoteObject | None) -> TransitionState:
    if remote is None:
        return TransitionState.ABSENT
    if remote.running is False:
        return TransitionState.STOPPED
    return TransitionState.RUNNING


def _observed_image(remote: RemoteObject) -> str | None:
    volumes = get_path(remote.root, "spec", "template", "spec", "volumes")
    if not isinstance(volumes, MArray):
        return None
    for volume in volumes:
        image = get_scalar(volume, "containerDisk", "image")
        if isinstance(image, str):
            return image
    return None


def _observed_cpu(remote: RemoteObject) -> int | None:
    raw = get_scalar(remote.root, "spec", "template", "spec", "domain", "resources", "requests", "cpu")
    if raw is None or raw == "":
        logger.debug("cpu request not found vm=%s", remote.identity)
        return None
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    try:
        return int(str(raw))
    except ValueError:
        logger.warning("failed to convert cpu value vm=%s value=%s", remote.identity, raw)
        return None


def project(
    namespace: str,
    name: str,
    state: TransitionState,
    remote: RemoteObject | None = None,
    transition: Transition | None = None,
) -> VMStatus:
    """Build the caller-visible status after an operation.

    The coarse status comes from ``state`` (the transition that just
    completed), never from a live health probe. Remote fields that are
    missing simply stay ``None``.
    """
    status = VMStatus(
        id=None if state == TransitionState.ABSENT else build_id(namespace, name),
        name=name,
        namespace=namespace,
        state=state,
        vm_status=STATUS_LABELS[state],
        workspace_transition=transition,
    )
    if remote is None or not isinstance(remote.root, MObject):
        return status

    memory = get_scalar(
        remote.root, "spec", "template", "spec", "domain", "resources", "requests", "memory"
    )
    status.creation_timestamp = remote.creation_timestamp
    status.resource_version = remote.resource_version
    status.running = remote.running
    status.image = _observed_image(remote)
    status.memory = memory if isinstance(memory, str) else None
    status.cpu = _observed_cpu(remote)
    return status
