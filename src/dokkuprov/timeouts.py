"""
Timeout constants for dokkuprov.

Centralizes timeout values so every external call is bounded and the
values are easy to tune in one place.
"""

from __future__ import annotations

# =============================================================================
# Subprocess Timeouts
# =============================================================================

# Default timeout for mutating commands (apt, ufw, dokku)
COMMAND_DEFAULT_TIMEOUT_S = 600.0

# Read-only queries ("dokku apps:exists", "systemctl is-active", ...)
QUERY_TIMEOUT_S = 60.0

# Platform bootstrap downloads and builds images, it can take a while
INSTALL_TIMEOUT_S = 3600.0

# =============================================================================
# HTTP Lookup Timeouts
# =============================================================================

# Default bound for IP detection and release lookups
HTTP_LOOKUP_TIMEOUT_S = 10.0

# Hard limits accepted from configuration
HTTP_LOOKUP_TIMEOUT_MIN_S = 1.0
HTTP_LOOKUP_TIMEOUT_MAX_S = 30.0
