from fastapi.responses import JSONResponse

from app.schemas.results import OperationResult


def to_response(result: OperationResult) -> JSONResponse:
    """Render an OperationResult with the status code it carries"""
    return JSONResponse(
        status_code=result.status_code,
        content=result.model_dump(mode="json"),
    )
