"""Audit capture of failures into the ``exception_log`` table."""

import logging
import traceback
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from order_executor.config import settings
from order_executor.models.exception_log import ExceptionLog

logger = logging.getLogger(__name__)


class AuditLog:
    """Best-effort exception recorder. Never raises into the caller."""

    def __init__(self, engine: Engine, service: str | None = None):
        self.engine = engine
        self.service = service or settings.service_name

    def capture(
        self,
        error: BaseException | str,
        *,
        module: str,
        method: str,
        level: str = "error",
        context: dict[str, Any] | None = None,
    ) -> None:
        if isinstance(error, BaseException):
            message = f"{type(error).__name__}: {error}"
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        else:
            message = error
            stack = None

        try:
            with Session(self.engine) as session:
                session.add(ExceptionLog(
                    service=self.service,
                    module=module,
                    method=method,
                    message=message,
                    stack=stack,
                    level=level,
                    context=_jsonable(context),
                ))
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to capture exception from {module}.{method}: {e} (original: {message})")


def _jsonable(context: dict[str, Any] | None) -> dict[str, Any] | None:
    if context is None:
        return None
    return {k: v if isinstance(v, (str, int, float, bool, type(None))) else str(v) for k, v in context.items()}
