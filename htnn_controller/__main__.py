"""Entry point: `python -m htnn_controller`."""

import kopf

from htnn_controller.core.config import get_settings
from htnn_controller.core.logging import setup_logging
from htnn_controller.operator import Controller
from htnn_controller.repositories.cluster import load_kube_config


def main() -> None:
    settings = get_settings()
    setup_logging()
    load_kube_config()

    registry = kopf.OperatorRegistry()
    Controller(settings).register(registry)

    if settings.namespace:
        kopf.run(
            registry=registry,
            namespaces=[settings.namespace],
            liveness_endpoint=settings.liveness_endpoint,
        )
    else:
        kopf.run(
            registry=registry,
            clusterwide=True,
            liveness_endpoint=settings.liveness_endpoint,
        )


if __name__ == "__main__":
    main()
