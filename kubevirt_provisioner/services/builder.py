import json
from dataclasses import dataclass

from kubevirt_provisioner.config import Settings
from kubevirt_provisioner.manifest import MArray, MObject, RemoteObject, obj
from kubevirt_provisioner.schemas import DesiredSpec, DeviceRequest
from kubevirt_provisioner.services import overflow
from kubevirt_provisioner.services.overflow import OverflowPlan
from kubevirt_provisioner.state_machine import Transition


VM_API_VERSION = "kubevirt.io/v1"
VM_KIND = "VirtualMachine"
CONTAINER_DISK = "containerdisk"
DEFAULT_NETWORK = "default"
HOOK_SIDECARS_ANNOTATION = "hooks.kubevirt.io/hookSidecars"
VM_LABEL = "kubevirt.io/vm"


@dataclass
class ManifestPlan:
    vm: RemoteObject
    overflow: OverflowPlan | None = None

    @property
    def secret(self) -> RemoteObject | None:
        return self.overflow.secret if self.overflow else None


def sidecar_hook_annotation(hook: str) -> str:
    return json.dumps(
        [
            {
                "args": ["--version", "v1alpha2"],
                "configMap": {
                    "hookPath": "/usr/bin/onDefineDomain",
                    "key": f"{hook}.py",
                    "name": hook,
                },
            }
        ],
        separators=(",", ":"),
    )


def _host_device(device: DeviceRequest, category: str, index: int) -> MObject:
    entry = obj(name=device.name or f"{category}-{index}", deviceName=device.device_name)
    if device.vendor_id:
        entry.set("vendorId", device.vendor_id)
    if device.product_id:
        entry.set("productId", device.product_id)
    return entry


def _usb_device(device: DeviceRequest, index: int) -> MObject:
    entry = obj(name=device.name or f"usb-{index}", deviceName=device.device_name)
    if device.vendor_id:
        entry.set("vendor", device.vendor_id)
    if device.product_id:
        entry.set("product", device.product_id)
    return entry


def _graft_networks(spec: DesiredSpec, devices: MObject, template_spec: MObject) -> None:
    interfaces = devices.array("interfaces")
    networks = template_spec.array("networks")
    if not spec.network_interfaces:
        interfaces.append(obj(name=DEFAULT_NETWORK, bridge={}))
        networks.append(obj(name=DEFAULT_NETWORK, pod={}))
        return
    for nic in spec.network_interfaces:
        interfaces.append(obj(name=nic.name, bridge={}))
        if nic.network_name == "pod":
            networks.append(obj(name=nic.name, pod={}))
        else:
            networks.append(obj(name=nic.name, multus={"networkName": nic.network_name}))


def _graft_devices(spec: DesiredSpec, devices: MObject) -> None:
    host_devices = MArray()
    for category, requests in (
        ("hostdevice", spec.host_devices),
        ("pci", spec.pci_devices),
        ("gpu", spec.gpu_devices),
    ):
        for index, device in enumerate(requests):
            host_devices.append(_host_device(device, category, index))
    if host_devices:
        devices.set("hostDevices", host_devices)

    if spec.usb_devices:
        devices.set(
            "usb",
            [_usb_device(device, index) for index, device in enumerate(spec.usb_devices)],
        )


def _graft_domain(spec: DesiredSpec, domain: MObject) -> None:
    resources = domain.child("resources")
    requests = resources.child("requests")
    if spec.machine_type:
        domain.set("machine", {"type": spec.machine_type})
    if spec.architecture:
        domain.set("cpu", {"architecture": spec.architecture})
    if spec.hugepages:
        key = f"hugepages-{spec.hugepages}"
        requests.set(key, spec.hugepages)
        resources.child("limits").set(key, spec.hugepages)
        domain.child("memory").set("hugepages", {"pageSize": spec.hugepages})


def _graft_scheduling(spec: DesiredSpec, template_spec: MObject) -> None:
    if spec.node_selector:
        template_spec.set("nodeSelector", dict(spec.node_selector))
    if spec.tolerations:
        template_spec.set("tolerations", [rule.to_manifest() for rule in spec.tolerations])
    if spec.affinity:
        template_spec.set("affinity", spec.affinity)


def build(spec: DesiredSpec, settings: Settings) -> ManifestPlan:
    """Translate a desired spec into a VirtualMachine manifest.

    Pure: cloud-init overflow is only planned here, the Secret itself is
    written by the caller through the gateway.
    """
    namespace = spec.namespace or settings.default_namespace
    template_metadata = obj(labels={VM_LABEL: spec.name})
    if spec.sidecar_hook:
        template_metadata.set(
            "annotations",
            {HOOK_SIDECARS_ANNOTATION: sidecar_hook_annotation(spec.sidecar_hook)},
        )

    domain = obj(
        devices={"disks": [{"name": CONTAINER_DISK, "disk": {"bus": "virtio"}}]},
        resources={"requests": {"memory": spec.memory, "cpu": spec.cpu}},
    )
    template_spec = obj(domain=domain)
    template_spec.set(
        "volumes", [{"name": CONTAINER_DISK, "containerDisk": {"image": spec.image}}]
    )

    devices = domain.child("devices")
    _graft_networks(spec, devices, template_spec)
    _graft_domain(spec, domain)
    _graft_devices(spec, devices)
    _graft_scheduling(spec, template_spec)

    cloud_init = None
    if spec.cloud_init:
        cloud_init = overflow.plan(
            spec.cloud_init,
            namespace=namespace,
            name=spec.name,
            agent_token=spec.agent_token,
            settings=settings,
        )
        devices.array("disks").append(
            obj(name=overflow.CLOUD_INIT_VOLUME, disk={"bus": "virtio"})
        )
        template_spec.array("volumes").append(cloud_init.volume)

    vm = RemoteObject(
        obj(
            apiVersion=VM_API_VERSION,
            kind=VM_KIND,
            metadata={
                "name": spec.name,
                "namespace": namespace,
                "labels": {"app": settings.app_label, "managed-by": settings.managed_by},
            },
            spec={
                "running": spec.transition == Transition.START,
                "template": {"metadata": template_metadata, "spec": template_spec},
            },
        )
    )
    return ManifestPlan(vm=vm, overflow=cloud_init)
