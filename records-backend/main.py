from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict
import asyncio
import os
import time

from db_manager import ENV_PATH, create_database_manager

# create_database_manager loads .env from this directory, so running uvicorn from the repo root still works
db = create_database_manager(env_path=ENV_PATH)

APP_ENV = os.getenv("APP_ENV", "development").lower()  # development | production
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "30"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    db.close()


app = FastAPI(title="Academic Records API", version="1.0.0", lifespan=lifespan)

# CORS Configuration
# In production set CORS_ORIGINS to a comma-separated list, e.g.
#   CORS_ORIGINS=https://records.example.edu,https://admin.example.edu
cors_origins_env = os.getenv("CORS_ORIGINS", "").strip()

cors_kwargs: Dict[str, Any] = {
    "allow_credentials": True,
    "allow_methods": ["*"],
    "allow_headers": ["*"],
}

if cors_origins_env:
    cors_kwargs["allow_origins"] = [o.strip() for o in cors_origins_env.split(",") if o.strip()]
else:
    # Local frontend dev servers
    cors_kwargs["allow_origins"] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

app.add_middleware(CORSMiddleware, **cors_kwargs)

# ==================== TIMEOUT MIDDLEWARE ====================

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Enforce a per-request time limit and answer 504 when it is exceeded"""

    def __init__(self, app, timeout: int = 30):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        try:
            response = await asyncio.wait_for(call_next(request), timeout=self.timeout)

            duration = time.time() - start_time
            if duration > 5:
                print(f"⚠️ Slow request: {request.method} {request.url.path} took {duration:.2f}s")

            return response

        except asyncio.TimeoutError:
            duration = time.time() - start_time
            print(f"⏱️ Request timeout: {request.method} {request.url.path} after {duration:.2f}s")

            return JSONResponse(
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                content={
                    "detail": f"Request timeout - operation took longer than {self.timeout} seconds",
                    "error": "GATEWAY_TIMEOUT",
                    "path": str(request.url.path),
                    "method": request.method,
                },
            )


app.add_middleware(TimeoutMiddleware, timeout=REQUEST_TIMEOUT)
print(f"✅ Timeout middleware enabled: {REQUEST_TIMEOUT}s per request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all requests with timing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        print(f"📥 {request.method} {request.url.path}")

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            print(f"❌ {request.method} {request.url.path} - ERROR ({duration:.2f}s): {str(e)}")
            raise

        duration = time.time() - start_time
        status_icon = "✅" if response.status_code < 400 else "❌"
        print(f"{status_icon} {request.method} {request.url.path} - {response.status_code} ({duration:.2f}s)")

        response.headers["X-Process-Time"] = f"{duration:.4f}"
        return response


app.add_middleware(RequestLoggingMiddleware)


# ==================== API ENDPOINTS ====================

@app.get("/")
def read_root():
    return {
        "message": "Academic Records API",
        "version": "1.0.0",
        "status": "online",
        "database": db.backend_name,
        "environment": APP_ENV,
    }


@app.get("/health")
def health_check():
    """Check that the active backend answers"""
    try:
        db.ping()
    except db.errors as e:
        print(f"❌ Health check failed ({db.backend_name}): {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {str(e)[:200]}",
        )

    return {
        "status": "healthy",
        "database": db.backend_name,
        "connection_status": "Connected",
    }


@app.get("/stats")
def get_stats():
    """Get database statistics"""
    try:
        return db.get_database_stats()
    except db.errors as e:
        print(f"❌ Stats error: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Failed to read database statistics: {str(e)[:200]}",
        )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
