#!/usr/bin/env python3
"""
Configuration for the Copilot / LM Studio proxy.
Edit these values to change the defaults; command line flags override them.
"""

__version__ = "1.0.0"

# =============================================================================
# Listener
# =============================================================================

# Port to listen on
PROXY_PORT = 3000

# Bind 0.0.0.0 instead of 127.0.0.1
BIND_ALL = False

# Answer CORS preflights and allow any origin
CORS_ENABLED = False

# =============================================================================
# Upstream
# =============================================================================

# LM Studio base URL (path and query of each request are appended)
LMSTUDIO_URL = 'http://localhost:1234'

# Seconds to wait for the upstream TCP connect. There is no total timeout:
# generations can stream for a long time.
UPSTREAM_CONNECT_TIMEOUT = 30

# =============================================================================
# Logging
# =============================================================================

# Log request/response bodies at DEBUG level
PROXY_DEBUG_LOG = False

# Optional log file (None = console only)
PROXY_LOG_FILE = None
