import base64
import logging
import textwrap
from dataclasses import dataclass
from typing import Protocol

from kubevirt_provisioner.config import Settings
from kubevirt_provisioner.manifest import MObject, RemoteObject, obj
from kubevirt_provisioner.metrics import metrics


logger = logging.getLogger(__name__)

CLOUD_INIT_VOLUME = "cloudinitdisk"
SECRET_DATA_KEY = "userdata"


class SecretWriter(Protocol):
    def ensure_secret(self, manifest: RemoteObject) -> bool: ...


@dataclass
class OverflowPlan:
    user_data: str
    volume: MObject
    secret: RemoteObject | None = None

    @property
    def secret_name(self) -> str | None:
        return self.secret.name if self.secret else None


def _shell_single_quote(value: str) -> str:
    return "'" + value.replace("'", "'\"'\"'") + "'"


def overflow_secret_name(prefix: str, vm_name: str) -> str:
    return f"{prefix}-{vm_name}-cloudinit"


def render_agent_bootstrap(payload: str, agent_token: str, settings: Settings) -> str:
    agent_block = textwrap.dedent(
        f"""\
        # Coder agent setup
        write_files:
          - path: /opt/coder/init
            permissions: "0755"
            content: |
              #!/bin/bash
              set -e

              # install and start code-server
              curl -fsSL https://code-server.dev/install.sh | sh -s -- --method=standalone --prefix=/tmp/code-server --version {settings.code_server_version}
              /tmp/code-server/bin/code-server --auth none --port 13337 >/tmp/code-server.log 2>&1 &

              exec coder agent --url {settings.agent_url} --token {_shell_single_quote(agent_token)}

          - path: /etc/systemd/system/coder-agent.service
            permissions: "0644"
            content: |
              [Unit]
              Description=Coder Agent
              After=network-online.target
              Wants=network-online.target

              [Service]
              User=coder
              ExecStart=/opt/coder/init
              EnvironmentFile=/var/run/secrets/.coder-agent-token
              Restart=always
              RestartSec=10
              TimeoutStopSec=90
              KillMode=process
              OOMScoreAdjust=-900
              SyslogIdentifier=coder-agent

              [Install]
              WantedBy=multi-user.target

        bootcmd:
          - mkdir -p /var/run/secrets
          - echo CODER_AGENT_TOKEN={_shell_single_quote(agent_token)} > /var/run/secrets/.coder-agent-token

        runcmd:
          - systemctl enable coder-agent
          - systemctl start coder-agent
          - echo "Coder agent setup complete!"
        """
    )
    return f"#cloud-config\n{payload.rstrip()}\n\n{agent_block}"


def build_overflow_secret(
    *, namespace: str, vm_name: str, user_data: str, settings: Settings
) -> RemoteObject:
    encoded = base64.b64encode(user_data.encode("utf-8")).decode("ascii")
    return RemoteObject(
        obj(
            apiVersion="v1",
            kind="Secret",
            metadata={
                "name": overflow_secret_name(settings.secret_prefix, vm_name),
                "namespace": namespace,
                "labels": {
                    "app": settings.app_label,
                    "managed-by": settings.managed_by,
                    "kubevirt.io/vm": vm_name,
                },
            },
            type="Opaque",
            data={SECRET_DATA_KEY: encoded},
        )
    )


def plan(
    payload: str,
    *,
    namespace: str,
    name: str,
    agent_token: str | None,
    settings: Settings,
) -> OverflowPlan:
    """Decide how cloud-init user data reaches the VM.

    With an agent token the payload is always wrapped in the agent bootstrap
    first. The result is embedded inline when it fits within
    ``settings.inline_user_data_limit`` bytes, otherwise it is moved to a
    Secret and the volume references the Secret by name. No I/O happens here.
    """
    user_data = payload
    if agent_token:
        user_data = render_agent_bootstrap(payload, agent_token, settings)

    size = len(user_data.encode("utf-8"))
    if size <= settings.inline_user_data_limit:
        return OverflowPlan(
            user_data=user_data,
            volume=obj(name=CLOUD_INIT_VOLUME, cloudInitNoCloud={"userData": user_data}),
        )

    secret = build_overflow_secret(
        namespace=namespace, vm_name=name, user_data=user_data, settings=settings
    )
    logger.debug(
        "cloud-init exceeds inline limit vm=%s/%s size=%s limit=%s secret=%s",
        namespace,
        name,
        size,
        settings.inline_user_data_limit,
        secret.name,
    )
    return OverflowPlan(
        user_data=user_data,
        volume=obj(
            name=CLOUD_INIT_VOLUME,
            cloudInitNoCloud={"secretRef": {"name": secret.name}},
        ),
        secret=secret,
    )


def ensure_overflow_secret(gateway: SecretWriter, overflow: OverflowPlan) -> bool:
    if overflow.secret is None:
        return False
    created = gateway.ensure_secret(overflow.secret)
    if created:
        metrics.inc("overflow_secret_created_total")
        logger.info("created overflow secret %s", overflow.secret.identity)
    else:
        # TODO: compare the stored userdata and replace it when cloud-init changed
        logger.info("overflow secret already exists %s", overflow.secret.identity)
    return created


def materialize(
    gateway: SecretWriter,
    payload: str,
    *,
    namespace: str,
    name: str,
    agent_token: str | None,
    settings: Settings,
) -> MObject:
    overflow = plan(
        payload,
        namespace=namespace,
        name=name,
        agent_token=agent_token,
        settings=settings,
    )
    ensure_overflow_secret(gateway, overflow)
    return overflow.volume
