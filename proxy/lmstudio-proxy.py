#!/usr/bin/env python3
"""
Copilot / LM Studio Compatibility Proxy

An HTTP proxy that sits between GitHub Copilot Chat and an LM Studio server
and patches the JSON that the two disagree on. Everything else (status codes,
headers, streaming) passes through untouched.

Fixes:
    1. Adds type: "object" (and empty properties) to tool parameter schemas
    2. Adds input_tokens_details / output_tokens_details to usage blocks,
       both in JSON responses and in streamed response.usage events

Usage:
    lmstudio-proxy.py                              # 127.0.0.1:3000 -> http://localhost:1234
    lmstudio-proxy.py -p 8000 -l http://10.0.0.5:1234
    lmstudio-proxy.py --bind-all --cors --debug

Point Copilot at http://localhost:3000 instead of the LM Studio URL.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import aiohttp
from aiohttp import web
from aiohttp.http_exceptions import HttpProcessingError
from yarl import URL

# Add proxy directory to path for config and lib imports
sys.path.insert(0, str(Path(__file__).parent))

from config import (
    __version__,
    BIND_ALL,
    CORS_ENABLED,
    LMSTUDIO_URL,
    PROXY_DEBUG_LOG,
    PROXY_LOG_FILE,
    PROXY_PORT,
    UPSTREAM_CONNECT_TIMEOUT,
)
from lib.headers import (
    is_event_stream, is_json, missing_auto_headers, sanitize, sanitize_request_headers,
)
from lib.payload import fix_request_body, fix_response_body
from lib.sse_filter import SseEventBuffer

FIXES = [
    "Adds type: 'object' to tool parameters",
    "Adds input_tokens_details to usage responses",
]

CORS_PREFLIGHT_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': '*',
    'Access-Control-Allow-Headers': '*',
}

# Logger setup
logger = logging.getLogger('lmstudio-proxy')


def setup_logging(debug: bool = False, log_file: Optional[str] = None):
    """Configure logging for the proxy."""
    # Clear existing handlers to prevent duplicates when called twice
    logger.handlers.clear()
    logger.propagate = False

    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    if debug:
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        )
    else:
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


@web.middleware
async def cors_preflight_middleware(request: web.Request, handler):
    """Answer CORS preflights locally instead of forwarding them."""
    if request.method == 'OPTIONS' and 'Access-Control-Request-Method' in request.headers:
        return web.Response(status=200, headers=CORS_PREFLIGHT_HEADERS)
    return await handler(request)


async def add_cors_headers(request: web.Request, response: web.StreamResponse):
    """on_response_prepare hook, so streamed responses get the header too."""
    response.headers.setdefault('Access-Control-Allow-Origin', '*')


class LmStudioProxy:
    """Async HTTP proxy for LM Studio with in-flight JSON fixes.

    One instance owns the settings and the pooled upstream client session
    shared by every request.
    """

    def __init__(self, upstream_url: str = LMSTUDIO_URL, port: int = PROXY_PORT,
                 bind_all: bool = BIND_ALL, cors: bool = CORS_ENABLED,
                 debug: bool = PROXY_DEBUG_LOG,
                 connect_timeout: Optional[float] = UPSTREAM_CONNECT_TIMEOUT):
        self.upstream_url = upstream_url.rstrip('/')
        self.port = port
        self.bind_all = bind_all
        self.cors = cors
        self.debug = debug
        self.connect_timeout = connect_timeout
        self.session = None

    @property
    def host(self) -> str:
        return '0.0.0.0' if self.bind_all else '127.0.0.1'

    def make_app(self) -> web.Application:
        """Build the catch-all aiohttp application."""
        middlewares = [cors_preflight_middleware] if self.cors else []
        # client_max_size=0 lifts the 1 MB default; chat requests get big
        app = web.Application(client_max_size=0, middlewares=middlewares)
        app.router.add_route('*', '/{path:.*}', self.handle_request)
        if self.cors:
            app.on_response_prepare.append(add_cors_headers)
        app.on_cleanup.append(self.cleanup)
        return app

    async def start_session(self):
        """Initialize the aiohttp client session."""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)

    async def close_session(self):
        """Close the aiohttp client session."""
        if self.session and not self.session.closed:
            await self.session.close()

    async def cleanup(self, app):
        """Cleanup on shutdown."""
        await self.close_session()

    def build_upstream_url(self, request: web.Request) -> URL:
        """Upstream base + the request's raw path and query, unre-encoded."""
        url = f"{self.upstream_url}{request.rel_url.raw_path}"
        query = request.rel_url.raw_query_string
        if query:
            url = f"{url}?{query}"
        return URL(url, encoded=True)

    async def handle_request(self, request: web.Request) -> web.StreamResponse:
        """Proxy one request to LM Studio, patching JSON on the way."""
        await self.start_session()

        target_url = self.build_upstream_url(request)
        logger.info(f"{request.method} {request.rel_url}")

        try:
            body = await request.read()
        except (HttpProcessingError, ConnectionError) as e:
            logger.error(f"Failed to read request body: {e}")
            return web.Response(status=400, text=f"Proxy error: failed to read request body: {e}")

        if body and is_json(request.headers):
            outcome = fix_request_body(body)
            if outcome.failed:
                logger.warning(f"Could not fix request body: {outcome.error}")
            body = outcome.body

        headers = sanitize_request_headers(request.headers)

        if self.debug:
            logger.debug(f"Upstream URL: {target_url}")
            logger.debug(f"Request headers: {dict(headers)}")
            if body:
                logger.debug(f"Request body: {body[:2000]!r}")

        try:
            upstream_response = await self.session.request(
                method=request.method,
                url=target_url,
                headers=headers,
                data=body or None,
                skip_auto_headers=missing_auto_headers(request.headers),
                allow_redirects=False,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to proxy request: {e}")
            return web.Response(status=502, text=f"Proxy error: {e}")

        async with upstream_response:
            is_streaming = is_event_stream(upstream_response.headers)
            logger.info(f"Response: {upstream_response.status} (streaming={is_streaming})")

            response_headers = sanitize(upstream_response.headers)

            if is_streaming:
                return await self._forward_stream(request, upstream_response, response_headers)
            return await self._forward_body(upstream_response, response_headers)

    async def _forward_body(self, upstream_response, headers) -> web.Response:
        """Buffer a non-streaming response and fix its usage block."""
        try:
            body = await upstream_response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to read response body: {e}")
            return web.Response(status=502, text=f"Proxy error: {e}")

        if self.debug:
            logger.debug(f"Response body: {body[:2000]!r}")

        if body and is_json(upstream_response.headers):
            outcome = fix_response_body(body)
            if outcome.failed:
                logger.debug(f"Response body passed through: {outcome.error}")
            body = outcome.body

        return web.Response(
            status=upstream_response.status,
            reason=upstream_response.reason,
            headers=headers,
            body=body,
        )

    async def _forward_stream(self, request, upstream_response, headers) -> web.StreamResponse:
        """Relay an SSE stream event by event as chunks arrive."""
        response = web.StreamResponse(
            status=upstream_response.status,
            reason=upstream_response.reason,
            headers=headers,
        )
        await response.prepare(request)

        events = SseEventBuffer()
        try:
            async for chunk in upstream_response.content.iter_any():
                if self.debug:
                    logger.debug(f"Stream chunk (raw): {chunk!r}")

                filtered = events.feed(chunk)
                if filtered:
                    await response.write(filtered)

            # Trailing bytes without a blank line go out as they are
            remaining = events.flush()
            if remaining:
                await response.write(remaining)
        except ConnectionResetError:
            logger.info("Client disconnected, closing upstream stream")
            upstream_response.close()
            return response
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # Headers are already sent; aborting is the only way to signal it
            logger.error(f"Upstream stream failed: {e}")
            raise

        await response.write_eof()
        return response

    def run(self):
        """Run the proxy server."""
        bind_addr = f"{self.host}:{self.port}"

        logger.info("Starting Copilot-LMStudio Proxy")
        logger.info(f"Listening on: http://{bind_addr}")
        logger.info(f"Proxying to: {self.upstream_url}")
        if self.cors:
            logger.info("CORS: Enabled")
        logger.info("Fixes:")
        for i, fix in enumerate(FIXES, 1):
            logger.info(f"  {i}. {fix}")

        web.run_app(
            self.make_app(),
            host=self.host,
            port=self.port,
            print=lambda x: logger.info(x.strip()) if 'Running' in str(x) else None,
        )


def main():
    parser = argparse.ArgumentParser(
        description='A proxy to fix compatibility issues between GitHub Copilot Chat and LM Studio',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('-p', '--port', type=int, default=PROXY_PORT,
                        help=f'Port to listen on (default: {PROXY_PORT})')
    parser.add_argument('-l', '--lmstudio-url', default=LMSTUDIO_URL,
                        help=f'LM Studio base URL (default: {LMSTUDIO_URL})')
    parser.add_argument('-b', '--bind-all', action='store_true', default=BIND_ALL,
                        help='Bind to all interfaces (0.0.0.0) instead of localhost only')
    parser.add_argument('-c', '--cors', action='store_true', default=CORS_ENABLED,
                        help='Enable CORS (allow any origin, method and header)')
    parser.add_argument('--connect-timeout', type=float, default=UPSTREAM_CONNECT_TIMEOUT,
                        help=f'Upstream connect timeout in seconds (default: {UPSTREAM_CONNECT_TIMEOUT})')
    parser.add_argument('--debug', action='store_true', default=PROXY_DEBUG_LOG,
                        help='Enable debug logging (includes bodies)')
    parser.add_argument('--log-file', default=PROXY_LOG_FILE,
                        help='Also write the log to this file')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args()

    setup_logging(debug=args.debug, log_file=args.log_file)

    proxy = LmStudioProxy(
        upstream_url=args.lmstudio_url,
        port=args.port,
        bind_all=args.bind_all,
        cors=args.cors,
        debug=args.debug,
        connect_timeout=args.connect_timeout,
    )
    try:
        proxy.run()
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == '__main__':
    main()
