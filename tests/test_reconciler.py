from kubevirt_provisioner.manifest import RemoteObject
from kubevirt_provisioner.services.reconciler import observed_state, project
from kubevirt_provisioner.state_machine import Transition, TransitionState


def _remote(**spec) -> RemoteObject:
    return RemoteObject.from_wire(
        {
            "metadata": {
                "name": "w1",
                "namespace": "ns",
                "resourceVersion": "42",
                "creationTimestamp": "2026-03-04T05:06:07Z",
            },
            "spec": spec,
        }
    )


def test_observed_state():
    assert observed_state(None) == TransitionState.ABSENT
    assert observed_state(_remote(running=False)) == TransitionState.STOPPED
    assert observed_state(_remote(running=True)) == TransitionState.RUNNING
    # runStrategy objects carry no running flag
    assert observed_state(_remote(runStrategy="Always")) == TransitionState.RUNNING


def test_project_absent_has_no_id():
    status = project("ns", "w1", TransitionState.ABSENT, transition=Transition.DELETE)
    assert status.id is None
    assert status.vm_status == "Absent"
    assert status.workspace_transition == Transition.DELETE
    assert status.image is None


def test_project_reads_remote_fields():
    remote = _remote(
        running=True,
        template={
            "spec": {
                "domain": {"resources": {"requests": {"memory": "8Gi", "cpu": "4"}}},
                "volumes": [
                    {"name": "cloudinitdisk", "cloudInitNoCloud": {"userData": "x"}},
                    {"name": "containerdisk", "containerDisk": {"image": "ubuntu:22.04"}},
                ],
            }
        },
    )
    status = project("ns", "w1", TransitionState.RUNNING, remote, Transition.START)
    assert status.id == "ns/w1"
    assert status.vm_status == "Running"
    assert status.creation_timestamp == "2026-03-04T05:06:07Z"
    assert status.resource_version == "42"
    assert status.running is True
    assert status.image == "ubuntu:22.04"
    assert status.memory == "8Gi"
    assert status.cpu == 4


def test_project_tolerates_missing_fields():
    status = project("ns", "w1", TransitionState.STOPPED, _remote(running=False))
    assert status.running is False
    assert status.image is None
    assert status.memory is None
    assert status.cpu is None


def test_project_unparseable_cpu_logs_warning(caplog):
    remote = _remote(template={"spec": {"domain": {"resources": {"requests": {"cpu": "500m"}}}}})
    status = project("ns", "w1", TransitionState.RUNNING, remote)
    assert status.cpu is None
    assert "failed to convert cpu value" in caplog.text
