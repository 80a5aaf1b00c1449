from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


IN_CLUSTER_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"
IN_CLUSTER_CA_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KUBEVIRT_", env_file=".env", extra="ignore"
    )

    api_server_url: str | None = Field(default=None)
    api_token: str | None = Field(default=None)
    token_path: str = Field(default=IN_CLUSTER_TOKEN_PATH)
    ca_cert_path: str | None = Field(default=IN_CLUSTER_CA_PATH)
    verify_tls: bool = Field(default=True)

    default_namespace: str = Field(default="default")
    app_label: str = Field(default="kubevirt-vm")
    managed_by: str = Field(default="terraform")

    secret_prefix: str = Field(default="coder")
    inline_user_data_limit: int = Field(default=2048, ge=1)
    delete_overflow_secret: bool = Field(default=False)
    agent_url: str = Field(default="https://coder-dev.nrp-nautilus.io")
    code_server_version: str = Field(default="4.11.0")

    read_timeout_sec: int = Field(default=30, ge=1)
    create_timeout_sec: int = Field(default=600, ge=1)
    update_timeout_sec: int = Field(default=300, ge=1)
    delete_timeout_sec: int = Field(default=300, ge=1)

    retry_attempts: int = Field(default=1, ge=1)
    retry_sleep_sec: int = Field(default=2, ge=0)

    log_level: str = Field(default="INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
