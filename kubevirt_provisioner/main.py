import logging

from fastapi import FastAPI

from kubevirt_provisioner.api import engine_error_handler, get_gateway, router
from kubevirt_provisioner.config import get_settings
from kubevirt_provisioner.errors import EngineError
from kubevirt_provisioner.logging_config import configure_logging


logger = logging.getLogger(__name__)


app = FastAPI(title="KubeVirt VM Provisioner")
app.include_router(router)
app.add_exception_handler(EngineError, engine_error_handler)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    logger.info(
        "provisioner startup complete api_server_url=%s default_namespace=%s inline_limit=%s",
        settings.api_server_url or "in-cluster",
        settings.default_namespace,
        settings.inline_user_data_limit,
    )


@app.on_event("shutdown")
def shutdown() -> None:
    if get_gateway.cache_info().currsize:
        get_gateway().close()
