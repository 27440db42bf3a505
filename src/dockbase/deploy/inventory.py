"""Volume and image inventory for dockbase.

Thin views over the engine's volume and image lists, plus the few
mutations operators run from the inventory screens: remove, prune, pull.
A volume's ``in_use_by`` is computed from the mounts of every container,
stopped ones included, since the engine refuses to remove those volumes.

Tags:
    volumes, images, inventory
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dockbase.core.errors import ConflictError, ResourceExistsError
from dockbase.core.logging import get_logger
from dockbase.deploy.allocator import container_display_name
from dockbase.deploy.engine import EngineClient
from dockbase.deploy.images import ImageProvisioner
from dockbase.deploy.models import ImageInfo, VolumeInfo

logger = get_logger(__name__)


@dataclass
class PruneReport:
    """What a volume prune deleted."""

    deleted: list[str] = field(default_factory=list)
    space_reclaimed: int = 0


def volume_users(containers: list[dict[str, Any]]) -> dict[str, list[str]]:
    """Map volume name to the containers mounting it."""
    users: dict[str, list[str]] = {}
    for summary in containers:
        for mount in summary.get("Mounts") or []:
            if mount.get("Type") == "volume" and mount.get("Name"):
                users.setdefault(mount["Name"], []).append(container_display_name(summary))
    return users


def image_info(entry: dict[str, Any]) -> ImageInfo:
    created = entry.get("Created")
    tags = [t for t in entry.get("RepoTags") or [] if t != "<none>:<none>"]
    return ImageInfo(
        id=entry.get("Id", ""),
        tags=tags,
        size=int(entry.get("Size") or 0),
        created=datetime.fromtimestamp(created, UTC) if isinstance(created, (int, float)) else None,
    )


class Inventory:
    """Lists and maintains engine volumes and images."""

    def __init__(self, engine: EngineClient, images: ImageProvisioner | None = None) -> None:
        self.engine = engine
        self.images = images or ImageProvisioner(engine)

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    async def list_volumes(self) -> list[VolumeInfo]:
        volumes = await self.engine.list_volumes()
        users = volume_users(await self.engine.list_containers(all=True))
        return sorted(
            (
                VolumeInfo(
                    name=v.get("Name", ""),
                    driver=v.get("Driver") or "local",
                    mountpoint=v.get("Mountpoint") or "",
                    created=v.get("CreatedAt"),
                    labels=v.get("Labels") or {},
                    in_use_by=users.get(v.get("Name", ""), []),
                )
                for v in volumes
            ),
            key=lambda v: v.name,
        )

    async def remove_volume(self, name: str, *, force: bool = False) -> None:
        """Remove a volume.

        Raises:
            ConflictError: The volume is mounted by a container.
            NotFoundError: No such volume.
        """
        try:
            await self.engine.remove_volume(name, force=force)
        except ResourceExistsError as exc:
            raise ConflictError(
                f"Volume '{name}' is in use by a container", field="volume", value=name, cause=exc
            ) from exc
        logger.info("volume.removed", volume=name)

    async def prune_volumes(self) -> PruneReport:
        raw = await self.engine.prune_volumes()
        report = PruneReport(
            deleted=list(raw.get("VolumesDeleted") or []),
            space_reclaimed=int(raw.get("SpaceReclaimed") or 0),
        )
        logger.info("volume.pruned", count=len(report.deleted), bytes=report.space_reclaimed)
        return report

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def list_images(self) -> list[ImageInfo]:
        return [image_info(entry) for entry in await self.engine.list_images()]

    async def remove_image(self, image: str, *, force: bool = False) -> None:
        try:
            await self.engine.remove_image(image, force=force)
        except ResourceExistsError as exc:
            raise ConflictError(
                f"Image '{image}' is used by a container", field="image", value=image, cause=exc
            ) from exc
        logger.info("image.removed", image=image)

    async def pull_image(self, image: str) -> bool:
        """Make ``image`` available; True if it had to be pulled."""
        return (await self.images.ensure(image)).unwrap()


__all__ = ["Inventory", "PruneReport", "volume_users", "image_info"]
