#!/usr/bin/env python3
"""
Devbin - A multi-tenant pastebin scoped by device code
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional
from urllib.parse import unquote_to_bytes

import uvicorn
import yaml
from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from pydantic import BaseModel
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from idgen import generate_id, generate_unique_device_code, is_valid_device_code
from paste_store import DEFAULT_DEVICE_PASTE_LIMIT, PasteStore

# Configuration management
CONFIG_DIR = Path(os.environ.get("DEVBIN_HOME", Path.home() / ".devbin"))
CONFIG_FILE = CONFIG_DIR / "config.yaml"
LOG_FILE = CONFIG_DIR / "devbin.log"

DEVICE_CODE_HEADER = "Device-Code"

# Setup logging
def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure the application log (file in CONFIG_DIR plus stderr)"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("devbin")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    logger.propagate = False  # Keep our lines out of the uvicorn logger

    # Log format: timestamp | level | message
    formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(message)s', datefmt='%Y-%m-%d %H:%M:%S')

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    try:
        file_handler = logging.FileHandler(LOG_FILE)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        logger.warning(f"Failed to setup file logging at {LOG_FILE}: {e}")

    return logger

logger = logging.getLogger("devbin")

# Default configuration
DEFAULT_CONFIG = {
    "host": "127.0.0.1",
    "port": 8820,
    "max_paste_size": 32 * 1024,
    "device_paste_limit": DEFAULT_DEVICE_PASTE_LIMIT,
    "url_scheme": "https",
    "log_level": "INFO",
}

def load_config(config_file: Path = CONFIG_FILE) -> dict:
    """Load configuration from config.yaml, writing the defaults if it is missing"""
    config_file = Path(config_file)
    config_file.parent.mkdir(parents=True, exist_ok=True)

    if not config_file.exists():
        with open(config_file, 'w') as f:
            yaml.safe_dump(DEFAULT_CONFIG, f)
        return dict(DEFAULT_CONFIG)

    with open(config_file, 'r') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"{config_file} must contain a mapping, got {type(config).__name__}")

    for key in config:
        if key not in DEFAULT_CONFIG:
            logger.warning(f"Ignoring unknown config key '{key}' in {config_file}")

    return {**DEFAULT_CONFIG, **{k: v for k, v in config.items() if k in DEFAULT_CONFIG}}

# Errors
class DevbinError(Exception):
    """Base for errors that map to a JSON error response"""

    status_code = 500
    message = "Internal Server Error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.message)
        self.detail = detail


class NotFound(DevbinError):
    status_code = 404
    message = "Not Found"


class Unauthorized(DevbinError):
    status_code = 401
    message = "Unauthorized"


class MethodNotAllowed(DevbinError):
    status_code = 405
    message = "Method Not Allowed"


class PayloadTooLarge(DevbinError):
    status_code = 413
    message = "Payload Too Large"


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message, status=status_code).model_dump(),
    )

# Response models
class ErrorResponse(BaseModel):
    error: str
    status: int

class ApiEndpoint(BaseModel):
    method: str
    path: str
    description: str

class IndexResponse(BaseModel):
    message: str
    endpoints: List[ApiEndpoint]

class DeviceCodeResponse(BaseModel):
    device_code: str

class HealthResponse(BaseModel):
    status: str
    pastes: int

ENDPOINTS = [
    ApiEndpoint(method="GET", path="/", description="Get API information"),
    ApiEndpoint(method="POST", path="/device", description="Generate a new device code"),
    ApiEndpoint(method="POST", path="/", description="Create a new paste (form data)"),
    ApiEndpoint(method="PUT", path="/", description="Create a new paste (raw data)"),
    ApiEndpoint(method="GET", path="/all", description="Get all paste IDs for your device"),
    ApiEndpoint(method="GET", path="/{paste}", description="Get paste content by ID"),
]

# Request helpers
def require_device_code(request: Request) -> str:
    """Dependency: the validated device code, or 401"""
    device_code = getattr(request.state, "device_code", None)
    if device_code is None:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(f"Missing or invalid {DEVICE_CODE_HEADER} header from {client_ip} for {request.method} {request.url.path}")
        raise Unauthorized()
    return device_code

def check_paste_size(size: int, max_paste_size: int, device_code: str) -> None:
    if size > max_paste_size:
        logger.warning(f"Rejected paste of {size} bytes for {device_code[:4]}... (max {max_paste_size})")
        raise PayloadTooLarge(f"Paste exceeds max size of {max_paste_size} bytes")

async def read_body(request: Request, max_paste_size: int, device_code: str) -> bytes:
    """Read the raw request body, stopping as soon as it passes max_paste_size"""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit():
        check_paste_size(int(content_length), max_paste_size, device_code)

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        check_paste_size(size, max_paste_size, device_code)
        chunks.append(chunk)

    body = b"".join(chunks)
    # request.form() reads from the cached body once the stream is consumed
    request._body = body
    return body

def parse_urlencoded_value(body: bytes, name: bytes) -> Optional[bytes]:
    """Return the first `name` field of a urlencoded body, percent-decoded to raw bytes"""
    for pair in body.split(b"&"):
        key, _, value = pair.partition(b"=")
        if unquote_to_bytes(key.replace(b"+", b" ")) == name:
            return unquote_to_bytes(value.replace(b"+", b" "))
    return None

async def read_form_value(request: Request, max_paste_size: int, device_code: str) -> bytes:
    """Read the `val` field of a submitted form as bytes"""
    body = await read_body(request, max_paste_size, device_code)

    if request.headers.get("content-type", "").startswith("multipart/form-data"):
        form = await request.form()
        value = form.get("val")
        if isinstance(value, UploadFile):
            data = await value.read()
        elif value is not None:
            data = value.encode("utf-8")
        else:
            data = None
    else:
        data = parse_urlencoded_value(body, b"val")

    if data is None:
        raise RequestValidationError([{
            "loc": ("body", "val"),
            "msg": "Field required",
            "type": "missing",
        }])
    check_paste_size(len(data), max_paste_size, device_code)
    return data


def create_app(config: Optional[dict] = None, store: Optional[PasteStore] = None) -> FastAPI:
    """Build the FastAPI application around a paste store"""
    config = {**DEFAULT_CONFIG, **(config or {})}
    max_paste_size = int(config["max_paste_size"])
    url_scheme = config["url_scheme"]
    if store is None:
        store = PasteStore(device_paste_limit=int(config["device_paste_limit"]))

    app = FastAPI(title="Devbin", version="1.0.0")
    app.state.store = store
    app.state.config = config

    @app.on_event("startup")
    async def startup_event():
        """Log the effective configuration"""
        logger.info("="*60)
        logger.info("Devbin server starting")
        logger.info(f"Config: {CONFIG_FILE}")
        logger.info(f"Log file: {LOG_FILE}")
        logger.info(f"Max paste size: {max_paste_size} bytes")
        logger.info(f"Pastes kept per device: {store.device_paste_limit}")
        logger.info("="*60)

    # Error handlers
    @app.exception_handler(DevbinError)
    async def devbin_error_handler(request: Request, exc: DevbinError):
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            logger.error(f"Couldn't find resource {request.url.path}")
        message = exc.detail if isinstance(exc.detail, str) else "Error"
        return error_response(exc.status_code, message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return error_response(400, "Bad Request")

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        """Catch-all, never leaks internal details"""
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return error_response(500, "Internal Server Error")

    # Middleware
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def extract_device_code(request: Request, call_next):
        """Attach the Device-Code header to request.state if it is well-formed"""
        device_code = request.headers.get(DEVICE_CODE_HEADER)
        if device_code is not None and not is_valid_device_code(device_code):
            logger.info(f"Ignoring malformed {DEVICE_CODE_HEADER} header for {request.url.path}")
            device_code = None
        request.state.device_code = device_code
        return await call_next(request)

    # Routes
    @app.get("/", response_model=IndexResponse)
    def index():
        """API information"""
        return IndexResponse(message="Devbin API - A pastebin service", endpoints=ENDPOINTS)

    @app.get("/health", response_model=HealthResponse)
    def health_check():
        """Health check endpoint"""
        return HealthResponse(status="ok", pastes=len(store))

    @app.post("/device", response_model=DeviceCodeResponse)
    def new_device(request: Request):
        """Generate a device code that no live paste uses"""
        client_ip = request.client.host if request.client else "unknown"
        device_code = generate_unique_device_code(store)
        logger.info(f"Generated device code {device_code[:4]}... for {client_ip}")
        return DeviceCodeResponse(device_code=device_code)

    @app.get("/all", response_model=List[str])
    def list_all_pastes(device_code: str = Depends(require_device_code)):
        """Paste ids for the calling device, newest first"""
        paste_ids = store.list_ids(device_code)
        logger.info(f"Listed {len(paste_ids)} pastes for {device_code[:4]}...")
        return paste_ids

    @app.post("/")
    async def submit(request: Request, device_code: str = Depends(require_device_code)):
        """Store a form-submitted paste and redirect to it"""
        content = await read_form_value(request, max_paste_size, device_code)
        paste_id = generate_id()
        await run_in_threadpool(store.insert, paste_id, content, device_code)
        logger.info(f"Stored paste {paste_id} ({len(content)} bytes) for {device_code[:4]}...")
        return RedirectResponse(url=f"/{paste_id}", status_code=302)

    @app.put("/", response_class=PlainTextResponse)
    async def submit_raw(request: Request, device_code: str = Depends(require_device_code)):
        """Store the raw request body and return its URL"""
        content = await read_body(request, max_paste_size, device_code)
        paste_id = generate_id()
        await run_in_threadpool(store.insert, paste_id, content, device_code)
        logger.info(f"Stored raw paste {paste_id} ({len(content)} bytes) for {device_code[:4]}...")

        host = request.headers.get("host")
        if host:
            return f"{url_scheme}://{host}/{paste_id}\n"
        return f"/{paste_id}\n"

    @app.head("/")
    def head_index():
        raise MethodNotAllowed()

    @app.get("/{paste}")
    def show_paste(paste: str, device_code: str = Depends(require_device_code)):
        """Return the paste content if it belongs to the calling device"""
        # Anything after the first dot is a file extension for renderers
        paste_id = paste.split(".", 1)[0]

        content = store.lookup(paste_id, device_code)
        if content is None:
            logger.info(f"Paste {paste_id} not found for {device_code[:4]}...")
            raise NotFound()

        return Response(content=content, media_type="text/plain; charset=utf-8")

    @app.head("/{paste}")
    def head_paste(paste: str):
        raise MethodNotAllowed()

    return app


def parse_bind_addr(value: str):
    """Split host:port for argparse"""
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got '{value}'")
    return host.strip("[]"), int(port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devbin", description="a pastebin.")
    parser.add_argument("bind_addr", nargs="?", type=parse_bind_addr,
                        help="socket address to bind to (default: from config, 127.0.0.1:8820)")
    parser.add_argument("--max-paste-size", type=int,
                        help="maximum paste size in bytes (default: from config, 32kB)")
    parser.add_argument("--device-paste-limit", type=int,
                        help="pastes kept per device before the oldest is dropped (default: from config, 2)")
    parser.add_argument("--config", type=Path, default=CONFIG_FILE,
                        help=f"config file (default: {CONFIG_FILE})")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)

    if args.bind_addr:
        config["host"], config["port"] = args.bind_addr
    if args.max_paste_size is not None:
        config["max_paste_size"] = args.max_paste_size
    if args.device_paste_limit is not None:
        config["device_paste_limit"] = args.device_paste_limit

    setup_logging(config["log_level"])

    print(f"Starting Devbin server on {config['host']}:{config['port']}...")
    print(f"Config file: {args.config}")
    print(f"Log file: {LOG_FILE}")
    print(f"Max paste size: {config['max_paste_size']} bytes")
    print(f"Pastes kept per device: {config['device_paste_limit']}")
    uvicorn.run(create_app(config), host=config["host"], port=int(config["port"]))


if __name__ == "__main__":
    main()
