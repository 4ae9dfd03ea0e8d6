"""多租户网盘业务包：配额账本、直传上传与对账清理。"""

from app.packages.types import AppPackage

from .api.v1 import api_router
from .core.config import get_settings
from .core.exceptions import generic_exception_handler, http_exception_handler
from .core.logger import logger, setup_logging
from .core.responses import create_response
from .db.init_db import init_db
from .services.sweeper import start_scheduler, stop_scheduler

package = AppPackage(
    name="drive",
    api_router=api_router,
    get_settings=get_settings,
    setup_logging=setup_logging,
    logger=logger,
    init_db=init_db,
    create_response=create_response,
    http_exception_handler=http_exception_handler,
    generic_exception_handler=generic_exception_handler,
    start_background=start_scheduler,
    stop_background=stop_scheduler,
)

__all__ = ["package", "api_router", "get_settings"]
