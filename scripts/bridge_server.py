"""Launch the command bridge alone as a local-only server."""

from __future__ import annotations

import uvicorn

from utils.settings_store import get_int_setting, get_settings


def main() -> None:
    settings = get_settings()
    host = str(settings.get("api_host", "127.0.0.1"))
    port = get_int_setting("api_port", 4173)
    access_log = bool(settings.get("http_access_log", False))
    log_level = str(settings.get("log_level", "INFO")).upper()
    if log_level == "DEEP":
        log_level = "DEBUG"
    elif log_level == "WARN":
        log_level = "WARNING"
    uvicorn.run(
        "api.server:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=log_level.lower(),
        access_log=access_log,
    )


if __name__ == "__main__":
    main()
