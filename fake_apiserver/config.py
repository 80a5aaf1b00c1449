from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakeApiServerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_APISERVER_", extra="ignore")

    bind_host: str = Field(default="0.0.0.0")
    bind_port: int = Field(default=8443, ge=1)
    initial_resource_version: int = Field(default=1000, ge=1)
    cluster_name: str = Field(default="fake-cluster")


@lru_cache(maxsize=1)
def get_settings() -> FakeApiServerSettings:
    return FakeApiServerSettings()
