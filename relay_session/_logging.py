# =============================================================================
# Relay Session -- Package Logger
# =============================================================================
#
# The library never installs handlers; applications configure logging.
# =============================================================================

import logging

logger = logging.getLogger("relay_session")
