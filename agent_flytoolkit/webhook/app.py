"""Secret intake endpoint.

Receives one ``{app_name, name, value}`` triple over a private listener and
upserts that single key, so the value never has to pass through the
workflow layer that keeps execution history. Only key names are logged.
"""
import logging
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, SecretStr

from ..fleet.domains.errors import FlyError, InvalidInputError, UnavailableError
from ..fleet.domains.models import DesiredSecretSet
from ..fleet.workflows.secret_reconciler import SecretReconciler

logger = logging.getLogger(__name__)


class SecretIntakeRequest(BaseModel):
    app_name: str
    name: str
    value: SecretStr


class SecretIntakeResponse(BaseModel):
    status: str
    name: str
    error: Optional[str] = None


def _unconfigured_reconciler() -> SecretReconciler:
    raise RuntimeError("Secret reconciler not initialized")


def create_app(reconciler_factory: Optional[Callable[[], SecretReconciler]] = None) -> FastAPI:
    """
    Build the intake application.

    Args:
        reconciler_factory: Dependency returning the SecretReconciler to use
    """
    app = FastAPI(title="Agent-Flytoolkit secret intake", docs_url=None, redoc_url=None, openapi_url=None)
    get_reconciler = reconciler_factory or _unconfigured_reconciler
    app.state.get_reconciler = get_reconciler

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        # The default handler echoes the submitted input, which may contain the value.
        errors = [
            {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
            for error in exc.errors()
        ]
        logger.warning(f"Rejected malformed secret intake request: {len(errors)} validation error(s)")
        return JSONResponse(status_code=422, content={"status": "error", "errors": errors})

    @app.post("/", response_model=SecretIntakeResponse)
    def receive_secret(payload: SecretIntakeRequest,
                       reconciler: SecretReconciler = Depends(get_reconciler)):
        """Upsert exactly one secret key; never removes unrelated keys."""
        logger.info(f"Received secret '{payload.name}' for app '{payload.app_name}'")
        try:
            desired = DesiredSecretSet({payload.name: payload.value.get_secret_value()})
        except InvalidInputError as e:
            return JSONResponse(
                status_code=400,
                content={"status": "error", "name": payload.name, "error": str(e)},
            )

        try:
            result = reconciler.upsert(payload.app_name, desired)
        except InvalidInputError as e:
            return JSONResponse(status_code=400, content={"status": "error", "name": payload.name, "error": str(e)})
        except UnavailableError as e:
            logger.error(f"Platform unavailable while setting secret '{payload.name}': {e}")
            return JSONResponse(status_code=503, content={"status": "error", "name": payload.name, "error": str(e)})
        except FlyError as e:
            logger.error(f"Failed to set secret '{payload.name}' on '{payload.app_name}': {e}")
            return JSONResponse(status_code=502, content={"status": "error", "name": payload.name, "error": str(e)})

        if not result.ok:
            error = result.failed.get(payload.name)
            return JSONResponse(status_code=502, content={"status": "error", "name": payload.name, "error": error})
        return SecretIntakeResponse(status="ok", name=payload.name)

    return app
