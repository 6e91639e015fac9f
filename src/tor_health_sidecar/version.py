from __future__ import annotations

import os
import platform

__version__ = "0.1.0"

# Overridden at image build time.
COMMIT = os.getenv("SIDECAR_BUILD_COMMIT", "none")
BUILD_DATE = os.getenv("SIDECAR_BUILD_DATE", "unknown")


def version_string() -> str:
    return f"tor-health-sidecar {__version__} (commit: {COMMIT}, built: {BUILD_DATE})"


def build_info() -> dict[str, str]:
    return {
        "version": __version__,
        "commit": COMMIT,
        "date": BUILD_DATE,
        "python_version": platform.python_version(),
    }


def user_agent() -> str:
    return f"tor-health-sidecar/{__version__}"
