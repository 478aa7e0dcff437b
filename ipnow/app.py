#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations
import enum
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from flask import Flask, Response, render_template, request
from werkzeug.exceptions import InternalServerError, MethodNotAllowed, NotFound

# ----------------------------- Base paths / config -----------------------------
BASE_DIR = Path(__file__).resolve().parent
SERVICE_VERSION = "2025-10-19.r1"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SERVER_HEADER = os.getenv("SERVER_HEADER", "ipnow")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = Flask(__name__, template_folder=str(BASE_DIR / "templates"))

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
UNKNOWN_IP = "unknown"
IPV4_UNAVAILABLE = "IPv4 not available"

# ----------------------------- Regexes -----------------------------
_RE_IPV4 = re.compile(r"[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}")

CLI_MARKERS = ("curl", "wget", "httpie")

# Header name -> RequestContext field
CONTEXT_HEADERS = {
    "user-agent": "user_agent",
    "accept-language": "accept_language",
    "accept-encoding": "accept_encoding",
    "accept": "accept",
    "referer": "referer",
    "x-forwarded-for": "x_forwarded_for",
    "connection": "connection",
    "via": "via",
}

# Checked in order, first non-empty wins
IP_HEADERS = ("cf-connecting-ip", "x-real-ip", "x-forwarded-for")

# ----------------------------- Model -----------------------------

class Service(enum.Enum):
    IPINFO = ("ipinfo.now", "ipinfo.now")
    IP4 = ("IP4.NOW", "ip4.now")
    IP6 = ("IP6.NOW", "ip6.now")

    @property
    def label(self) -> str:
        return self.value[0]

    @property
    def domain(self) -> str:
        return self.value[1]


class ClientKind(enum.Enum):
    CLI = "cli"
    BROWSER = "browser"


@dataclass(frozen=True)
class RequestContext:
    client_ip: str
    method: str
    service: Service
    path: str
    client_kind: ClientKind
    user_agent: str = ""
    accept_language: str = ""
    accept_encoding: str = ""
    accept: str = ""
    referer: str = ""
    x_forwarded_for: str = ""
    connection: str = ""
    via: str = ""

    @property
    def is_cli(self) -> bool:
        return self.client_kind is ClientKind.CLI


@dataclass(frozen=True)
class FormattedResponse:
    body: str
    content_type: str = "text/plain"
    status: int = 200

# ----------------------------- Header parsing -----------------------------

def _lowered(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}

def extract_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Return the RequestContext header fields; missing headers map to ""."""
    h = _lowered(headers)
    return {field: h.get(name) or "" for name, field in CONTEXT_HEADERS.items()}

def resolve_client_ip(headers: Mapping[str, str]) -> str:
    """Best-effort caller IP from proxy headers. Advisory only, nothing is validated."""
    h = _lowered(headers)
    for name in IP_HEADERS:
        val = h.get(name)
        if not val: continue
        if name == "x-forwarded-for":
            return val.split(",")[0].strip()
        return val
    return UNKNOWN_IP

# ----------------------------- Classifiers -----------------------------

def is_ipv4(ip: str) -> bool:
    # Shape only: 999.999.999.999 passes.
    return _RE_IPV4.fullmatch(ip) is not None

def is_ipv6(ip: str) -> bool:
    return ":" in ip and "." not in ip

def detect_client_kind(user_agent: str, accept: str) -> ClientKind:
    ua = user_agent.lower()
    if any(m in ua for m in CLI_MARKERS) or "text/html" not in accept:
        return ClientKind.CLI
    return ClientKind.BROWSER

def select_service(host: str) -> Service:
    host = host.lower()
    if "ip4.now" in host: return Service.IP4
    if "ip6.now" in host: return Service.IP6
    return Service.IPINFO

def build_context(headers: Mapping[str, str], method: str, host: str, path: str) -> RequestContext:
    fields = extract_headers(headers)
    return RequestContext(
        client_ip=resolve_client_ip(headers),
        method=method,
        service=select_service(host),
        path=path.lower(),
        client_kind=detect_client_kind(fields["user_agent"], fields["accept"]),
        **fields,
    )

# ----------------------------- Formatters -----------------------------

def text_response(value: str) -> FormattedResponse:
    return FormattedResponse(value + "\n")

def summary_fields(ctx: RequestContext) -> Dict[str, str]:
    """The ten echoed fields in their published order."""
    return {
        "ip_addr": ctx.client_ip,
        "user_agent": ctx.user_agent,
        "language": ctx.accept_language,
        "referer": ctx.referer,
        "connection": ctx.connection,
        "method": ctx.method,
        "encoding": ctx.accept_encoding,
        "mime": ctx.accept,
        "via": ctx.via,
        "forwarded": ctx.x_forwarded_for,
    }

def all_text_response(ctx: RequestContext) -> FormattedResponse:
    lines = [f"{k}: {v}" for k, v in summary_fields(ctx).items()]
    return FormattedResponse("\n".join(lines) + "\n")

def json_response(ctx: RequestContext) -> FormattedResponse:
    data: Dict[str, Any] = dict(summary_fields(ctx))
    data["ipv4"] = is_ipv4(ctx.client_ip)
    data["ipv6"] = is_ipv6(ctx.client_ip)
    return FormattedResponse(json.dumps(data, ensure_ascii=False, indent=2), "application/json")

def html_response(ctx: RequestContext, display_ip: str) -> FormattedResponse:
    """Render the browser page.

    ``display_ip`` is shown wherever the caller's address appears, so the
    IPv4-only service can render its "not available" notice in the same page.
    Values are autoescaped by Jinja2.
    """
    body = render_template(
        "index.html",
        ctx=ctx,
        display_ip=display_ip,
        service=ctx.service.label,
        domain=ctx.service.domain,
    )
    return FormattedResponse(body, "text/html")

# ----------------------------- Routing -----------------------------

class Endpoint(enum.Enum):
    ROOT = "root"
    IP = "ip"
    USER_AGENT = "user_agent"
    LANGUAGE = "language"
    ENCODING = "encoding"
    MIME = "mime"
    REFERER = "referer"
    FORWARDED = "forwarded"
    ALL = "all"
    JSON = "json"
    DEFAULT = "default"


ROUTES: Dict[str, Endpoint] = {
    "/": Endpoint.ROOT,
    "/ip": Endpoint.IP,
    "/ua": Endpoint.USER_AGENT,
    "/user-agent": Endpoint.USER_AGENT,
    "/lang": Endpoint.LANGUAGE,
    "/language": Endpoint.LANGUAGE,
    "/encoding": Endpoint.ENCODING,
    "/mime": Endpoint.MIME,
    "/referer": Endpoint.REFERER,
    "/forwarded": Endpoint.FORWARDED,
    "/all": Endpoint.ALL,
    "/json": Endpoint.JSON,
    "/all.json": Endpoint.JSON,
}

def route(path: str) -> Endpoint:
    return ROUTES.get(path.lower(), Endpoint.DEFAULT)

def _landing(ctx: RequestContext) -> FormattedResponse:
    if ctx.is_cli:
        return text_response(ctx.client_ip)
    return html_response(ctx, ctx.client_ip)

def _field(name: str) -> Callable[[RequestContext], FormattedResponse]:
    return lambda ctx: text_response(getattr(ctx, name))

HANDLERS: Dict[Endpoint, Callable[[RequestContext], FormattedResponse]] = {
    Endpoint.ROOT: _landing,
    Endpoint.IP: _field("client_ip"),
    Endpoint.USER_AGENT: _field("user_agent"),
    Endpoint.LANGUAGE: _field("accept_language"),
    Endpoint.ENCODING: _field("accept_encoding"),
    Endpoint.MIME: _field("accept"),
    Endpoint.REFERER: _field("referer"),
    Endpoint.FORWARDED: _field("x_forwarded_for"),
    Endpoint.ALL: all_text_response,
    Endpoint.JSON: json_response,
    Endpoint.DEFAULT: _landing,
}

def respond(ctx: RequestContext) -> FormattedResponse:
    """Service policy first, then path dispatch. Exactly one formatter runs."""
    if ctx.service is Service.IP4 and not is_ipv4(ctx.client_ip):
        logger.debug("ip4 service refused non-IPv4 caller %r", ctx.client_ip)
        if ctx.is_cli:
            return text_response(IPV4_UNAVAILABLE)
        return html_response(ctx, IPV4_UNAVAILABLE)
    endpoint = route(ctx.path)
    logger.debug("dispatch %s %s -> %s (%s, %s)", ctx.method, ctx.path, endpoint.value,
                 ctx.service.domain, ctx.client_kind.value)
    return HANDLERS[endpoint](ctx)

# ----------------------------- Utilities -----------------------------

def config_snapshot() -> Dict[str, str]:
    return {
        "HOST": os.getenv("HOST", "0.0.0.0"),
        "PORT": os.getenv("PORT", "80"),
        "LOG_LEVEL": LOG_LEVEL,
        "SERVER_HEADER": SERVER_HEADER,
        "SERVICE_VERSION": SERVICE_VERSION,
    }

def _current_context() -> RequestContext:
    # Raw PATH_INFO: request.path collapses leading slashes
    path = request.environ.get("PATH_INFO", "") or "/"
    return build_context(request.headers, request.method, request.host, path)

def _to_flask(out: FormattedResponse) -> Response:
    return Response(out.body, status=out.status, mimetype=out.content_type)

# ----------------------------- Endpoints -----------------------------

@app.route("/", methods=ALL_METHODS, merge_slashes=False)
@app.route("/<path:path>", methods=ALL_METHODS, merge_slashes=False)
def root(path: str = "") -> Response:
    return _to_flask(respond(_current_context()))

@app.errorhandler(NotFound)
@app.errorhandler(MethodNotAllowed)
def unrouted(error):
    # Paths the URL map cannot match (e.g. "//x") still get the default page.
    return root()

@app.errorhandler(InternalServerError)
def internal_error(error):
    logger.error("unhandled error for %s %s", request.method, request.path,
                 exc_info=getattr(error, "original_exception", None) or error)
    return Response("internal error\n", status=500, mimetype="text/plain")

@app.after_request
def after_request(resp: Response) -> Response:
    resp.headers["Server"] = SERVER_HEADER
    logger.info("%s - %s %s - %s - %s", resolve_client_ip(request.headers), request.method,
                request.path, select_service(request.host).domain, resp.status_code)
    return resp

if __name__ == "__main__":
    cfg = config_snapshot()
    logger.info("ipnow %s listening on %s:%s", SERVICE_VERSION, cfg["HOST"], cfg["PORT"])
    app.run(host=cfg["HOST"], port=int(cfg["PORT"]))
