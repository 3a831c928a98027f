import logging
import time

from fastapi import FastAPI, Request

logger = logging.getLogger("attendance.requests")


def create_logging_middleware(app: FastAPI) -> FastAPI:
    """
    Adds a middleware to log request method, path, status and processing time.

    Bodies are not logged: they carry employee coordinates.
    """
    @app.middleware("http")
    async def log_request_response_time(request: Request, call_next):
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "-"

        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        logger.info(
            f"IP={client_ip} | {request.method} {request.url.path} | "
            f"Status={response.status_code} | Time={process_time:.4f}s"
        )
        response.headers["X-Process-Time"] = str(round(process_time, 4))
        return response

    return app
