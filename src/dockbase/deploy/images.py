"""Image provisioning for dockbase.

``ImageProvisioner.ensure(image)`` makes an image available locally. If any
local image already carries the tag it returns at once without touching the
registry; otherwise it pulls under one overall timeout.

Outcomes:
    Ok(False)                    already present, nothing pulled
    Ok(True)                     pulled
    Err(ImagePullError)          the engine or registry reported an error
    Err(ImagePullTimeoutError)   the pull outlived ``timeout`` seconds

Timeouts are retryable; pull errors usually are not (bad tag, no auth).

Tags:
    images, pull, timeout, idempotent
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from dockbase.core.errors import (
    ConnectivityError,
    DockbaseError,
    ImagePullError,
    ImagePullTimeoutError,
)
from dockbase.core.logging import get_logger
from dockbase.core.result import Err, Ok, Result
from dockbase.deploy.engine import EngineClient, normalize_image

logger = get_logger(__name__)

DEFAULT_PULL_TIMEOUT = 600.0


def has_tag(images: list[dict[str, Any]], image: str) -> bool:
    wanted = normalize_image(image)
    for entry in images:
        for tag in entry.get("RepoTags") or []:
            if tag == wanted or tag == image:
                return True
        for digest in entry.get("RepoDigests") or []:
            if digest == image:
                return True
    return False


class ImageProvisioner:
    """Ensures images are present locally, pulling at most once."""

    def __init__(self, engine: EngineClient, *, timeout: float = DEFAULT_PULL_TIMEOUT) -> None:
        self.engine = engine
        self.timeout = timeout

    async def is_present(self, image: str) -> bool:
        return has_tag(await self.engine.list_images(), image)

    async def ensure(self, image: str) -> Result[bool]:
        image = normalize_image(image)
        try:
            if await self.is_present(image):
                logger.debug("image.present", image=image)
                return Ok(False)
        except ConnectivityError as exc:
            return Err(exc)

        logger.info("image.pull.started", image=image, timeout=self.timeout)
        started = time.monotonic()
        try:
            await asyncio.wait_for(self.engine.pull_image(image), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("image.pull.timeout", image=image, timeout=self.timeout)
            return Err(
                ImagePullTimeoutError(
                    f"Pulling {image} did not finish within {self.timeout:.0f}s",
                    cause=exc,
                ).with_context(image=image)
            )
        except ImagePullError as exc:
            logger.warning("image.pull.failed", image=image, error=str(exc))
            return Err(exc)
        except ConnectivityError as exc:
            return Err(exc)
        except DockbaseError as exc:
            logger.warning("image.pull.failed", image=image, error=str(exc))
            return Err(
                ImagePullError(f"Failed to pull {image}: {exc.message}", cause=exc).with_context(
                    image=image
                )
            )

        logger.info(
            "image.pull.completed",
            image=image,
            duration_s=round(time.monotonic() - started, 1),
        )
        return Ok(True)


__all__ = ["ImageProvisioner", "DEFAULT_PULL_TIMEOUT", "has_tag"]
