"""Template Renderer: writes a planned pack rendering to disk.

All decisions (inclusion, substitution, output paths) are made up front by
:func:`~mobile_forge.templating.substitution.plan_render`; this module only
checks the destination and performs the writes.  Each file is written
atomically, so a failure can leave a partial tree but never a truncated file.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from pathlib import Path

from ..config import AppConfig
from ..errors import DestinationNotEmpty, RenderIOError
from ..utils import atomic_write, is_empty_dir
from .pack import TemplatePack, TemplatePackRegistry
from .substitution import RenderPlan, plan_render

logger = logging.getLogger(__name__)


@dataclass
class RenderedTree:
    """The concrete project tree produced by one render."""

    root: Path
    files: list[str] = field(default_factory=list)
    pack: str = ""

    def subtree(self, prefix: str) -> list[str]:
        """Relative paths below *prefix* (``"apple"`` -> ``apple/...``), prefix stripped."""
        lead = prefix.rstrip("/") + "/"
        return [path[len(lead):] for path in self.files if path.startswith(lead)]

    def has_subtree(self, prefix: str) -> bool:
        return bool(self.subtree(prefix))


class TemplateRenderer:
    """Renders template packs into project directories.

    Args:
        registry: Where pack references are resolved.  Only needed when
            :meth:`render` is given a reference string instead of a pack.
    """

    def __init__(self, registry: TemplatePackRegistry | None = None) -> None:
        self.registry = registry

    def resolve(self, pack: TemplatePack | str) -> TemplatePack:
        if isinstance(pack, TemplatePack):
            return pack
        if self.registry is None:
            raise ValueError("a registry is required to resolve pack references")
        return self.registry.get(pack)

    def plan(self, pack: TemplatePack | str, config: AppConfig) -> RenderPlan:
        """Compute what :meth:`render` would write, without touching the disk."""
        resolved = self.resolve(pack)
        return plan_render(resolved.entries(), resolved.manifest, config)

    async def render(
        self,
        pack: TemplatePack | str,
        config: AppConfig,
        destination: str | Path,
        ignore: Collection[str] = (),
    ) -> RenderedTree:
        """Render *pack* for *config* into *destination*.

        Args:
            pack: A loaded pack or a ``name[@version]`` reference.
            config: Project identity and per-platform overrides.
            destination: Must be absent or an empty directory.
            ignore: Top-level entry names allowed to exist in *destination*.

        Returns:
            The rendered tree, paths sorted.

        Raises:
            PackNotFound: If the reference cannot be resolved.
            DestinationNotEmpty: If *destination* has content; nothing is
                written.
            UnresolvedPlaceholder: If a token has no value; nothing is
                written.
            RenderIOError: If reading the pack or writing a file fails.  Files
                written before the failure are left in place.
        """
        destination = Path(destination)
        resolved = self.resolve(pack)

        if not is_empty_dir(destination, ignore):
            raise DestinationNotEmpty(
                f"Destination {destination} is not empty",
                path=destination,
            )

        plan = plan_render(resolved.entries(), resolved.manifest, config)
        logger.info(
            "Rendering %s into %s: %d files, %d excluded",
            resolved.reference,
            destination,
            len(plan.files),
            len(plan.excluded),
        )

        for planned in plan.files:
            target = destination / planned.path
            try:
                await asyncio.to_thread(atomic_write, target, planned.data, planned.mode)
            except OSError as exc:
                raise RenderIOError(f"Failed to write {target}: {exc}", path=target) from exc

        return RenderedTree(root=destination, files=sorted(plan.paths), pack=resolved.reference)
