# src/tiris_portal/main.py

import asyncio
import os
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .config import CONFIG_FILE_DIR, settings
from .equity import (
    compute_metrics,
    fetch_lightweight_metrics,
    market_context_from_trading,
    resolve_effective_stock_price,
    trading_day_count,
    warmup_state,
)
from .errors import ErrorKind, HandshakeError, PortalError, WarmupInProgress, to_http_status
from .oauth_flow import POPUP_MODE, callback_message_from_params
from .services import BrowserSession, PortalServices
from .session_data import AuthProvider

SESSION_COOKIE_NAME = "session_id"


class SessionMiddlewareCustom(BaseHTTPMiddleware):
    """Attaches the per-browser session to the request, restoring it from stored tokens after a reload."""

    async def dispatch(self, request, call_next):
        services: PortalServices = request.app.state.services
        browser = services.get_or_create_session(request.cookies.get(SESSION_COOKIE_NAME))
        await browser.ensure_restored()
        request.state.browser = browser
        response: StarletteResponse = await call_next(request)
        response.set_cookie(
            SESSION_COOKIE_NAME,
            browser.session_id,
            max_age=services.settings.SESSION_MAX_AGE_SECONDS,
            httponly=True,
            secure=services.settings.SESSION_COOKIE_SECURE,
            samesite="lax",
        )
        return response


# --- FastAPI App Setup ---
app = FastAPI(
    title="TIRIS Portal BFF",
    description="Backend-For-Frontend for the TIRIS trading portal, handling auth sessions and proxying to the TIRIS API.",
    version="0.1.0"
)

app.add_middleware(SessionMiddlewareCustom)

# --- Static Files and Templates ---
app.mount("/static", StaticFiles(directory=CONFIG_FILE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=CONFIG_FILE_DIR / "templates")


# --- Error handling ---
@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError):
    print(f"MAIN: {request.method} {request.url.path} failed with {exc.kind.value}: {exc}")
    content: Dict[str, Any] = {"error": exc.to_dict()}
    headers = None
    if isinstance(exc, WarmupInProgress):
        content["retry_after_ms"] = exc.retry_after_ms
        headers = {"Retry-After": str(max(1, round(exc.retry_after_ms / 1000)))}
    return JSONResponse(status_code=to_http_status(exc), content=content, headers=headers)


# --- Dependencies ---
def get_services(request: Request) -> PortalServices:
    return request.app.state.services


def get_browser(request: Request) -> BrowserSession:
    return request.state.browser


async def get_authenticated_browser(browser: BrowserSession = Depends(get_browser)) -> BrowserSession:
    if not browser.manager.is_authenticated:
        raise PortalError(ErrorKind.UNAUTHORIZED, "Not authenticated")
    return browser


async def get_access_token(browser: BrowserSession = Depends(get_authenticated_browser)) -> str:
    return await browser.manager.ensure_fresh_token()


def parse_provider(provider: str, services: PortalServices) -> AuthProvider:
    try:
        parsed = AuthProvider(provider.lower())
    except ValueError:
        raise HandshakeError(ErrorKind.INVALID_PROVIDER, f"Unknown provider: {provider}")
    if parsed.value not in services.settings.ENABLED_PROVIDERS:
        raise HandshakeError(ErrorKind.INVALID_PROVIDER, f"Provider not enabled: {provider}")
    return parsed


def safe_redirect_target(target: Optional[str]) -> Optional[str]:
    # Only same-site paths; anything else falls back to the default target.
    if not target or not target.startswith("/") or target.startswith("//"):
        return None
    return target


# --- Favicon Route ---
@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    favicon_path = CONFIG_FILE_DIR / "static" / "favicon.ico"
    if os.path.isfile(favicon_path):
        return FileResponse(favicon_path, media_type="image/x-icon")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Pages ---
@app.get("/", response_class=HTMLResponse)
async def read_root(request: Request, browser: BrowserSession = Depends(get_browser)):
    manager = browser.manager
    print(f"MAIN: / read_root entered. State: {manager.state.value}")
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "session": manager.session,
            "providers": request.app.state.services.settings.ENABLED_PROVIDERS,
            "error": request.query_params.get("error"),
        },
    )


@app.get("/dashboard", response_class=HTMLResponse)
async def dashboard(request: Request, browser: BrowserSession = Depends(get_browser)):
    manager = browser.manager
    if not manager.is_authenticated:
        browser.handshakes.remember_redirect(request.url.path)
        print("MAIN: /dashboard - Not authenticated. Remembered target and redirecting to /.")
        return RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)

    just_signed_in = manager.just_signed_in
    if just_signed_in:
        manager.acknowledge_sign_in()
    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {"session": manager.session, "just_signed_in": just_signed_in},
    )


@app.get("/login/{provider}")
async def login(
        provider: str,
        request: Request,
        browser: BrowserSession = Depends(get_browser),
        services: PortalServices = Depends(get_services),
):
    auth_provider = parse_provider(provider, services)
    target = safe_redirect_target(request.query_params.get("next"))
    auth_url = await browser.oauth_flow.begin_redirect_login(auth_provider, target)
    print(f"MAIN: /login/{provider} - Redirecting to the identity provider.")
    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


@app.get("/auth/callback")
async def auth_callback(request: Request, browser: BrowserSession = Depends(get_browser)):
    print(f"MAIN: /auth/callback entered. Query keys: {list(request.query_params.keys())}")
    message = callback_message_from_params(request.query_params)
    pending = browser.oauth_flow.pending_handshake()

    if pending is not None and pending.mode == POPUP_MODE:
        # The opener completes the exchange; this page only forwards the result.
        return templates.TemplateResponse(
            request,
            "callback.html",
            {"message": message.model_dump(), "origin": request.app.state.services.settings.BFF_ORIGIN},
        )

    try:
        result = await browser.oauth_flow.complete_callback(message)
        await browser.manager.complete_login(result.auth)
    except PortalError as e:
        print(f"MAIN: Error during auth callback: {e}")
        return RedirectResponse(url=f"/?error={e.kind.value}", status_code=status.HTTP_302_FOUND)

    # Full reload: in-memory state is rebuilt from the stored tokens on the next request.
    browser.reload()
    print(f"MAIN: /auth/callback successful. Redirecting to: {result.redirect_target}")
    return RedirectResponse(url=result.redirect_target, status_code=status.HTTP_302_FOUND)


@app.get("/logout")
async def logout(browser: BrowserSession = Depends(get_browser)):
    await browser.manager.logout()
    return RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)


# --- BFF API: authentication ---
class SignInRequest(BaseModel):
    email: str
    password: str


class SignUpRequest(SignInRequest):
    full_name: str


def session_payload(browser: BrowserSession) -> Dict[str, Any]:
    manager = browser.manager
    return {
        "user": manager.session.model_dump() if manager.session else None,
        "state": manager.state.value,
        "just_signed_in": manager.just_signed_in,
    }


@app.post("/api/bff/oauth/popup/{provider}")
async def start_popup_login(
        provider: str,
        browser: BrowserSession = Depends(get_browser),
        services: PortalServices = Depends(get_services),
):
    auth_provider = parse_provider(provider, services)
    auth_url = await browser.oauth_flow.initiate(auth_provider, mode=POPUP_MODE)
    return {"auth_url": auth_url}


@app.post("/api/bff/oauth/exchange")
async def exchange_popup_callback(
        request: Request,
        payload: Dict[str, Any],
        browser: BrowserSession = Depends(get_browser),
):
    origin = request.headers.get("origin") or browser.channel.origin
    if not browser.channel.post(payload, origin):
        raise HandshakeError(ErrorKind.VALIDATION, "Rejected OAuth callback message.")
    message = browser.channel.receive_nowait()
    result = await browser.manager.complete_oauth_callback(message)
    response = session_payload(browser)
    response["redirect_target"] = result.redirect_target
    return response


@app.post("/api/bff/signin")
async def sign_in(body: SignInRequest, browser: BrowserSession = Depends(get_browser)):
    await browser.manager.sign_in_with_email_password(body.email, body.password)
    return session_payload(browser)


@app.post("/api/bff/signup")
async def sign_up(body: SignUpRequest, browser: BrowserSession = Depends(get_browser)):
    await browser.manager.sign_up_with_email_password(body.email, body.password, body.full_name)
    return session_payload(browser)


@app.post("/api/bff/refresh")
async def refresh(browser: BrowserSession = Depends(get_browser)):
    await browser.manager.refresh_auth()
    return session_payload(browser)


@app.get("/api/bff/userinfo")
async def get_user_info(browser: BrowserSession = Depends(get_authenticated_browser)):
    return session_payload(browser)


# --- BFF API: tradings and exchange bindings ---
@app.get("/api/bff/tradings")
async def list_tradings(
        with_metrics: bool = False,
        token: str = Depends(get_access_token),
        services: PortalServices = Depends(get_services),
):
    tradings = await services.trading_api.list_tradings(token)
    items = [trading.model_dump() for trading in tradings]
    if with_metrics:
        contexts = [market_context_from_trading(trading) for trading in tradings]
        metrics = await asyncio.gather(*[
            fetch_lightweight_metrics(
                services.trading_api,
                trading,
                context.stock_symbol,
                context.quote_symbol,
                exchange_type=(trading.exchange_binding or {}).get("exchange_type"),
                token=token,
            )
            for trading, context in zip(tradings, contexts)
        ])
        for item, item_metrics in zip(items, metrics):
            item["metrics"] = item_metrics.model_dump()
    return {"tradings": items}


@app.post("/api/bff/tradings", status_code=status.HTTP_201_CREATED)
async def create_trading(
        payload: Dict[str, Any],
        token: str = Depends(get_access_token),
        services: PortalServices = Depends(get_services),
):
    trading = await services.trading_api.create_trading(payload, token)
    return trading.model_dump()


@app.delete("/api/bff/tradings/{trading_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_trading(
        trading_id: str,
        token: str = Depends(get_access_token),
        services: PortalServices = Depends(get_services),
):
    await services.trading_api.delete_trading(trading_id, token)
    services.equity.invalidate(trading_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/bff/tradings/{trading_id}/equity-curve")
async def get_equity_curve(
        trading_id: str,
        timeframe: str = "1d",
        incremental: bool = False,
        token: str = Depends(get_access_token),
        services: PortalServices = Depends(get_services),
):
    trading = await services.trading_api.get_trading(trading_id, token)
    if incremental:
        curve, appended = await services.equity.refresh_curve(trading, timeframe, token)
    else:
        curve = await services.equity.load_curve(trading, timeframe, token)
        appended = len(curve.points)
    candlesticks = curve.candlesticks()
    return {
        "curve": curve.model_dump(),
        "appended": appended,
        "candlesticks": [candle.model_dump() for candle in candlesticks],
        "effective_stock_price": resolve_effective_stock_price(candlesticks, curve),
        "warmup": warmup_state(curve).model_dump(),
    }


@app.get("/api/bff/tradings/{trading_id}/metrics")
async def get_trading_metrics(
        trading_id: str,
        timeframe: str = "1d",
        token: str = Depends(get_access_token),
        services: PortalServices = Depends(get_services),
):
    trading = await services.trading_api.get_trading(trading_id, token)
    curve = services.equity.cached(trading_id, timeframe)
    if curve is None:
        curve = await services.equity.load_curve(trading, timeframe, token)
    logs = await services.equity.trading_logs(trading, token)
    initial_balance = curve.initial_balance or market_context_from_trading(trading).quote_balance
    metrics = compute_metrics(curve.points, initial_balance, logs)
    return {
        "metrics": metrics.model_dump(),
        "trading_days": trading_day_count(trading, services.clock()),
        "warmup": warmup_state(curve).model_dump(),
    }


@app.get("/api/bff/exchange-bindings")
async def list_exchange_bindings(
        token: str = Depends(get_access_token),
        services: PortalServices = Depends(get_services),
):
    bindings = await services.trading_api.list_exchange_bindings(token)
    return {"exchange_bindings": [binding.model_dump() for binding in bindings]}


@app.post("/api/bff/exchange-bindings", status_code=status.HTTP_201_CREATED)
async def create_exchange_binding(
        payload: Dict[str, Any],
        token: str = Depends(get_access_token),
        services: PortalServices = Depends(get_services),
):
    binding = await services.trading_api.create_exchange_binding(payload, token)
    return binding.model_dump()


@app.delete("/api/bff/exchange-bindings/{binding_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_exchange_binding(
        binding_id: str,
        token: str = Depends(get_access_token),
        services: PortalServices = Depends(get_services),
):
    await services.trading_api.delete_exchange_binding(binding_id, token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Startup / Shutdown ---
@app.on_event("startup")
async def startup_event():
    # Tests install their own services before startup.
    if getattr(app.state, "services", None) is None:
        app.state.services = PortalServices(settings)
    services: PortalServices = app.state.services
    services.start()

    print("--- TIRIS Portal BFF (FastAPI) Starting Up ---")
    print(f"API Base URL: {services.settings.API_BASE_URL}")
    print(f"BFF Origin: {services.settings.BFF_ORIGIN}")
    print(f"BFF Redirect URI: {services.settings.BFF_REDIRECT_URI}")
    print(f"Enabled providers: {services.settings.ENABLED_PROVIDERS}")
    print(f"Token refresh margin: {services.settings.TOKEN_REFRESH_MARGIN_SECONDS}s, "
          f"check interval: {services.settings.REFRESH_CHECK_INTERVAL_SECONDS}s")
    print(f"Session Secret Key is set: {'Yes' if services.settings.SESSION_SECRET_KEY else 'NO'}")
    if not services.settings.SESSION_COOKIE_SECURE:
        print("WARNING: Session cookie is not marked secure. Enable SESSION_COOKIE_SECURE behind HTTPS.")
    print("-------------------------------------------")


@app.on_event("shutdown")
async def shutdown_event():
    services: Optional[PortalServices] = getattr(app.state, "services", None)
    if services is not None:
        await services.aclose()
        app.state.services = None
    print("--- TIRIS Portal BFF shut down ---")
