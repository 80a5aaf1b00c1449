import json

from kubevirt_provisioner.schemas import DesiredSpec
from kubevirt_provisioner.services.builder import build


def _spec(**overrides) -> DesiredSpec:
    fields = {
        "name": "w1",
        "namespace": "ns",
        "image": "img:latest",
        "memory": "2Gi",
        "cpu": 2,
        "transition": "start",
    }
    fields.update(overrides)
    return DesiredSpec(**fields)


def _template_spec(wire: dict) -> dict:
    return wire["spec"]["template"]["spec"]


def test_minimal_manifest_shape(settings):
    wire = build(_spec(), settings).vm.to_wire()
    assert wire["apiVersion"] == "kubevirt.io/v1"
    assert wire["kind"] == "VirtualMachine"
    assert wire["metadata"] == {
        "name": "w1",
        "namespace": "ns",
        "labels": {"app": "kubevirt-vm", "managed-by": "terraform"},
    }
    assert wire["spec"]["running"] is True
    assert wire["spec"]["template"]["metadata"] == {"labels": {"kubevirt.io/vm": "w1"}}

    template = _template_spec(wire)
    assert template["domain"]["resources"] == {"requests": {"memory": "2Gi", "cpu": 2}}
    assert template["domain"]["devices"]["disks"] == [
        {"name": "containerdisk", "disk": {"bus": "virtio"}}
    ]
    assert template["domain"]["devices"]["interfaces"] == [{"name": "default", "bridge": {}}]
    assert template["networks"] == [{"name": "default", "pod": {}}]
    assert template["volumes"] == [
        {"name": "containerdisk", "containerDisk": {"image": "img:latest"}}
    ]
    for optional in ("nodeSelector", "tolerations", "affinity"):
        assert optional not in template


def test_running_flag_only_set_for_start(settings):
    assert build(_spec(transition="stop"), settings).vm.running is False
    assert build(_spec(transition=None), settings).vm.running is False


def test_namespace_defaults_from_settings(settings):
    vm = build(_spec(namespace=None), settings).vm
    assert vm.namespace == "terraform-dev"


def test_optional_domain_sections(settings):
    wire = build(
        _spec(machine_type="q35", architecture="amd64", hugepages="1Gi"), settings
    ).vm.to_wire()
    domain = _template_spec(wire)["domain"]
    assert domain["machine"] == {"type": "q35"}
    assert domain["cpu"] == {"architecture": "amd64"}
    assert domain["resources"]["requests"]["hugepages-1Gi"] == "1Gi"
    assert domain["resources"]["limits"] == {"hugepages-1Gi": "1Gi"}
    assert domain["memory"] == {"hugepages": {"pageSize": "1Gi"}}


def test_sidecar_hook_annotation(settings):
    wire = build(_spec(sidecar_hook="smbios"), settings).vm.to_wire()
    annotation = wire["spec"]["template"]["metadata"]["annotations"][
        "hooks.kubevirt.io/hookSidecars"
    ]
    assert annotation == (
        '[{"args":["--version","v1alpha2"],"configMap":{"hookPath":"/usr/bin/onDefineDomain",'
        '"key":"smbios.py","name":"smbios"}}]'
    )
    assert json.loads(annotation)[0]["configMap"]["name"] == "smbios"


def test_scheduling_fields(settings):
    affinity = {
        "nodeAffinity": {
            "requiredDuringSchedulingIgnoredDuringExecution": {
                "nodeSelectorTerms": [
                    {"matchExpressions": [{"key": "gpu", "operator": "In", "values": ["a100"]}]}
                ]
            }
        }
    }
    wire = build(
        _spec(
            node_selector={"kubernetes.io/hostname": "node-1"},
            tolerations=["nvidia.com/gpu:NoSchedule", "dedicated=vm:NoExecute", "broken"],
            affinity=affinity,
        ),
        settings,
    ).vm.to_wire()
    template = _template_spec(wire)
    assert template["nodeSelector"] == {"kubernetes.io/hostname": "node-1"}
    assert template["tolerations"] == [
        {"key": "nvidia.com/gpu", "operator": "Exists", "effect": "NoSchedule"},
        {"key": "dedicated", "operator": "Equal", "value": "vm", "effect": "NoExecute"},
        {"key": "broken", "operator": "Exists", "effect": "NoSchedule"},
    ]
    assert template["affinity"] == affinity


def test_gpu_devices_append_to_host_devices(settings):
    wire = build(
        _spec(
            host_devices=["intel.com/qat"],
            pci_devices=[{"name": "nic", "device_name": "mellanox.com/cx6", "vendor_id": "15b3"}],
            gpu_devices=["nvidia.com/A100", "nvidia.com/A100"],
        ),
        settings,
    ).vm.to_wire()
    host_devices = _template_spec(wire)["domain"]["devices"]["hostDevices"]
    assert host_devices == [
        {"name": "hostdevice-0", "deviceName": "intel.com/qat"},
        {"name": "nic", "deviceName": "mellanox.com/cx6", "vendorId": "15b3"},
        {"name": "gpu-0", "deviceName": "nvidia.com/A100"},
        {"name": "gpu-1", "deviceName": "nvidia.com/A100"},
    ]


def test_gpu_devices_alone_create_host_devices(settings):
    wire = build(_spec(gpu_devices=["nvidia.com/A100"]), settings).vm.to_wire()
    assert _template_spec(wire)["domain"]["devices"]["hostDevices"] == [
        {"name": "gpu-0", "deviceName": "nvidia.com/A100"}
    ]


def test_usb_devices(settings):
    wire = build(
        _spec(usb_devices=["kubevirt.io/storage", {"device_name": "kubevirt.io/key", "vendor_id": "0x1234", "product_id": "0x5678"}]),
        settings,
    ).vm.to_wire()
    assert _template_spec(wire)["domain"]["devices"]["usb"] == [
        {"name": "usb-0", "deviceName": "kubevirt.io/storage"},
        {"name": "usb-1", "deviceName": "kubevirt.io/key", "vendor": "0x1234", "product": "0x5678"},
    ]


def test_network_interfaces_pair_with_networks(settings):
    wire = build(_spec(network_interfaces=["eth0", "eth1:storage-net"]), settings).vm.to_wire()
    template = _template_spec(wire)
    interfaces = template["domain"]["devices"]["interfaces"]
    networks = template["networks"]
    assert [i["name"] for i in interfaces] == [n["name"] for n in networks] == ["eth0", "eth1"]
    assert networks[0] == {"name": "eth0", "pod": {}}
    assert networks[1] == {"name": "eth1", "multus": {"networkName": "storage-net"}}


def test_small_cloud_init_stays_inline(settings):
    plan = build(_spec(cloud_init="#cloud-config\nhostname: w1\n"), settings)
    template = _template_spec(plan.vm.to_wire())
    assert plan.secret is None
    assert template["volumes"][-1] == {
        "name": "cloudinitdisk",
        "cloudInitNoCloud": {"userData": "#cloud-config\nhostname: w1\n"},
    }
    assert template["domain"]["devices"]["disks"][-1] == {
        "name": "cloudinitdisk",
        "disk": {"bus": "virtio"},
    }


def test_large_cloud_init_references_secret(settings):
    plan = build(_spec(cloud_init="x" * 3000), settings)
    template = _template_spec(plan.vm.to_wire())
    assert plan.secret is not None
    assert plan.secret.name == "coder-w1-cloudinit"
    assert template["volumes"][-1] == {
        "name": "cloudinitdisk",
        "cloudInitNoCloud": {"secretRef": {"name": "coder-w1-cloudinit"}},
    }
    assert len(template["volumes"]) == 2


def test_build_is_deterministic(settings):
    spec = _spec(
        host_devices=["a/b"],
        gpu_devices=["c/d"],
        tolerations=["k=v:NoSchedule"],
        node_selector={"b": "2", "a": "1"},
        cloud_init="y" * 4000,
        agent_token="tok",
    )
    first = build(spec, settings)
    second = build(spec, settings)
    assert first.vm == second.vm
    assert first.secret == second.secret
    assert first.vm.to_wire() == second.vm.to_wire()
