import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

import jinja2
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from qrcode.exceptions import DataOverflowError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import (
    SERVICE_NAME,
    SERVICE_VERSION,
    DynamicConfig,
    Settings,
    load_settings,
    parse_dynamic_config,
    setup_logging,
)
from manager import TemplateLoadError, TemplateManager, TemplateNotFoundError
from translations import TranslationLoadError, Translations, detect_language
from utils import VlessURLError, encode_base64, generate_vless_url, make_qr_png

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Dependencies ---

def get_template_manager(request: Request) -> TemplateManager:
    return request.app.state.template_manager


def get_translations(request: Request) -> Translations:
    return request.app.state.translations


def get_renderer(request: Request) -> Jinja2Templates:
    return request.app.state.renderer


def first_query_values(request: Request) -> Dict[str, str]:
    """Query parameters with the first value winning for repeated keys."""
    values: Dict[str, str] = {}
    for key, value in request.query_params.multi_items():
        values.setdefault(key, value)
    return values


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else ""


def not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="404 page not found")


# --- Routes ---

@router.get("/health")
async def health(manager: TemplateManager = Depends(get_template_manager)):
    payload = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "templates": manager.get_template_types(),
    }
    logger.debug("Health check completed successfully")
    return JSONResponse(payload)


@router.post("/qrcode")
async def qr_code(url: str = Form("")):
    """Render a posted vless:// link as a PNG QR code."""
    if not url:
        logger.error("URL parameter is empty or missing")
        raise HTTPException(status_code=400, detail="URL parameter is required")

    if not url.startswith("vless://"):
        logger.warning(f"Invalid VLESS URL format: {url}")
        raise HTTPException(status_code=400, detail="Invalid VLESS URL")

    try:
        png = make_qr_png(url)
    except (DataOverflowError, ValueError) as e:
        logger.error(f"Failed to generate QR code: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate QR code")

    logger.debug(f"QR code generated successfully (url length {len(url)})")
    return Response(
        content=png,
        media_type="image/png",
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )


@router.get("/", response_class=HTMLResponse)
async def home(
    request: Request,
    lang: str = "",
    manager: TemplateManager = Depends(get_template_manager),
    translations: Translations = Depends(get_translations),
    renderer: Jinja2Templates = Depends(get_renderer),
):
    language = detect_language(lang)
    logger.info(f"Serving home page (language={language})")

    texts = translations.get_texts(language)
    context = {
        "title": texts.get("title", ""),
        "language": language,
        "texts": texts,
        "defaults": DynamicConfig(),
        "template_types": manager.get_template_types(),
    }
    try:
        return renderer.TemplateResponse(request, "home.html", context)
    except jinja2.TemplateError as e:
        logger.error(f"Failed to render home page template: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/config/{config_type}/{filename}")
async def download_config(
    request: Request,
    config_type: str,
    filename: str,
    manager: TemplateManager = Depends(get_template_manager),
):
    """Serve the generated config as a JSON attachment."""
    if not filename.endswith(".json") or filename == ".json":
        logger.warning(f"Invalid config download path format: {request.url.path}")
        raise not_found()

    uuid = filename[: -len(".json")]
    dynamic_cfg = parse_dynamic_config(first_query_values(request))
    logger.info(
        f"Generating configuration download for type '{config_type}'",
        extra={"config_type": config_type, "uuid": uuid, "server": dynamic_cfg.server,
               "server_port": dynamic_cfg.server_port},
    )

    try:
        config = manager.generate_config(config_type, uuid, dynamic_cfg)
    except TemplateNotFoundError as e:
        logger.warning(f"Invalid configuration type or generation failed: {e}")
        raise not_found()

    try:
        return JSONResponse(
            content=config,
            headers={"Content-Disposition": f"attachment; filename={config_type}-config.json"},
        )
    except (TypeError, ValueError) as e:
        logger.error(f"Failed to encode configuration JSON for type '{config_type}': {e}")
        raise HTTPException(status_code=500, detail="Failed to encode configuration")


@router.get("/{config_type}/{uuid}", response_class=HTMLResponse)
async def config_page(
    request: Request,
    config_type: str,
    uuid: str,
    manager: TemplateManager = Depends(get_template_manager),
    translations: Translations = Depends(get_translations),
    renderer: Jinja2Templates = Depends(get_renderer),
):
    """Config page with the share link and its QR code."""
    query = first_query_values(request)
    language = detect_language(query.get("lang", ""))
    dynamic_cfg = parse_dynamic_config(query)
    logger.info(
        f"Generating configuration page for type '{config_type}'",
        extra={"config_type": config_type, "uuid": uuid, "language": language,
               "server": dynamic_cfg.server, "server_port": dynamic_cfg.server_port,
               "ws_path": dynamic_cfg.ws_path},
    )

    try:
        config = manager.generate_config(config_type, uuid, dynamic_cfg)
    except TemplateNotFoundError as e:
        logger.warning(f"Invalid configuration type or generation failed: {e}")
        raise not_found()

    try:
        vless_url = generate_vless_url(config, uuid)
    except VlessURLError as e:
        logger.error(f"Failed to generate VLESS URL for type '{config_type}': {e}")
        raise HTTPException(status_code=500, detail="Failed to generate configuration URL")

    try:
        qr = make_qr_png(vless_url)
    except (DataOverflowError, ValueError) as e:
        logger.error(f"Failed to generate QR code for type '{config_type}': {e}")
        raise HTTPException(status_code=500, detail="Failed to generate QR code")

    texts = translations.get_texts(language)
    context = {
        "title": texts.get("title", ""),
        "language": language,
        "texts": texts,
        "config_type": config_type.upper(),
        "config_type_orig": config_type,
        "uuid": uuid,
        "qr_code": encode_base64(qr),
        "vless_url": vless_url,
        "query_string": request.url.query,
    }
    try:
        return renderer.TemplateResponse(request, "config.html", context)
    except jinja2.TemplateError as e:
        logger.error(f"Failed to render config page template: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


# --- Middleware & error handlers ---

async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.error(
            f"HTTP request failed with unhandled exception: {request.method} {request.url.path} {duration_ms}ms",
            extra={"method": request.method, "path": request.url.path, "query": request.url.query,
                   "duration_ms": duration_ms, "remote_addr": client_ip(request)},
            exc_info=True,
        )
        raise
    duration_ms = int((time.perf_counter() - start) * 1000)

    status = response.status_code
    fields = {
        "method": request.method,
        "path": request.url.path,
        "query": request.url.query,
        "status_code": status,
        "duration_ms": duration_ms,
        "bytes_written": response.headers.get("content-length"),
        "remote_addr": client_ip(request),
        "user_agent": request.headers.get("user-agent", ""),
        "referer": request.headers.get("referer", ""),
    }
    summary = f"{request.method} {request.url.path} {status} {duration_ms}ms"
    if status >= 500:
        logger.error(f"HTTP request completed with server error: {summary}", extra=fields)
    elif status >= 400:
        logger.warning(f"HTTP request completed with client error: {summary}", extra=fields)
    elif status >= 300:
        logger.info(f"HTTP request completed with redirect: {summary}", extra=fields)
    else:
        logger.info(f"HTTP request completed successfully: {summary}", extra=fields)
    return response


async def http_error(request: Request, exc: StarletteHTTPException):
    return PlainTextResponse(
        str(exc.detail),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Service endpoints available: /, /<type>/<uuid>, /config/<type>/<uuid>.json, /qrcode, /health")
    yield
    logger.info(f"{SERVICE_NAME} service shutting down gracefully")


# --- App factory ---

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Load templates and translations once, then wire them into a new app.

    Raises TemplateLoadError / TranslationLoadError if startup data is unusable.
    """
    settings = settings or Settings()
    templates_dir = settings.resolve(settings.templates_dir)

    template_manager = TemplateManager.load_templates(templates_dir, settings.template_types)
    translations = Translations.load(settings.resolve(settings.locales_dir))

    app = FastAPI(title="VLESS Config Generator", version=SERVICE_VERSION, lifespan=lifespan)
    app.state.template_manager = template_manager
    app.state.translations = translations
    app.state.renderer = Jinja2Templates(directory=settings.resolve(settings.html_dir))

    # Mounted before the router so /static/* never reaches /{type}/{uuid}
    app.mount("/static", StaticFiles(directory=settings.resolve("static")), name="static")
    app.middleware("http")(log_requests)
    app.add_exception_handler(StarletteHTTPException, http_error)
    app.include_router(router)
    return app


def main(argv: Optional[List[str]] = None) -> None:
    settings = load_settings(argv)
    setup_logging(settings.log_level, settings.log_format)
    logger.info(
        f"Starting VLESS Config Generator service on port {settings.port}",
        extra={"service": SERVICE_NAME, "version": SERVICE_VERSION, "port": settings.port},
    )
    try:
        app = create_app(settings)
    except (TemplateLoadError, TranslationLoadError):
        logger.critical("Failed to load startup data", exc_info=True)
        raise SystemExit(1)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
