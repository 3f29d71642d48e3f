from __future__ import annotations

import logging

from pnp.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s [%(deploy_env)s/%(region)s/%(app)s] %(name)s: %(message)s"


class _TelemetryLabelFilter(logging.Filter):
    def __init__(self, *, deploy_env: str, region: str, app: str) -> None:
        super().__init__()
        self._labels = {"deploy_env": deploy_env, "region": region, "app": app}

    def filter(self, record: logging.LogRecord) -> bool:
        # Stamp deployment labels on every record so aggregated logs stay attributable.
        for key, value in self._labels.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def configure_logging() -> None:
    settings = get_settings()
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.addFilter(
        _TelemetryLabelFilter(
            deploy_env=settings.kube_app_deployed_env,
            region=settings.kube_cluster_region,
            app=settings.monitoring_app_name,
        )
    )
    root = logging.getLogger()
    # Replace handlers so repeated app factory calls do not duplicate output.
    root.handlers = [handler]
    root.setLevel(level)
    # Keep driver chatter out of debug traces unless explicitly requested.
    logging.getLogger("aiormq").setLevel(max(level, logging.INFO))
    logging.getLogger("aio_pika").setLevel(max(level, logging.INFO))
