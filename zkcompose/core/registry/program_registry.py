"""
Program Registry - Maps logical program names to compiled images.

The registry is an immutable snapshot built once at startup and passed
explicitly to the components that need it. Lookups never mutate state, so
concurrent readers need no locking.

Manifest format (JSON):

    {
        "mod-exp": {"path": "guests/mod_exp.bin"},
        "is-even": {"path": "guests/is_even.bin", "image_id": "0x..."}
    }

Relative paths are resolved against the manifest's directory. A declared
`image_id` must equal the SHA-256 of the binary.
"""

import json
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Union

from zkcompose.core.errors import UnknownProgram
from zkcompose.core.receipt import ProgramImage
from zkcompose.crypto import bytes_to_hex, hex_to_bytes
from zkcompose.utils.logger import get_logger

logger = get_logger("registry")


class ProgramRegistry:
    """
    Read-only name -> ProgramImage table.

    Also indexes images by id so receipts can be traced back to a program.
    """

    def __init__(self, images: Iterable[ProgramImage]):
        by_name: Dict[str, ProgramImage] = {}
        by_id: Dict[bytes, ProgramImage] = {}

        for image in images:
            if image.name in by_name:
                raise ValueError(f"Duplicate program name: {image.name}")
            if image.image_id in by_id:
                raise ValueError(
                    f"Programs {by_id[image.image_id].name!r} and {image.name!r} "
                    f"share image id {bytes_to_hex(image.image_id)}"
                )
            by_name[image.name] = image
            by_id[image.image_id] = image

        self._by_name: Mapping[str, ProgramImage] = MappingProxyType(by_name)
        self._by_id: Mapping[bytes, ProgramImage] = MappingProxyType(by_id)

        logger.info(f"ProgramRegistry loaded {len(by_name)} programs")

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def from_binaries(cls, binaries: Mapping[str, bytes]) -> "ProgramRegistry":
        """Build from name -> binary; image ids are content hashes."""
        return cls(ProgramImage.from_binary(name, binary) for name, binary in binaries.items())

    @classmethod
    def from_manifest(cls, manifest_path: Union[str, Path]) -> "ProgramRegistry":
        """
        Load a registry from a JSON manifest.

        Raises:
            ValueError: if the manifest is malformed or an image id mismatches
            FileNotFoundError: if the manifest or a binary is missing
        """
        manifest_path = Path(manifest_path)
        try:
            entries = json.loads(manifest_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid program manifest {manifest_path}: {e}")

        if not isinstance(entries, dict):
            raise ValueError(f"Program manifest must be an object, got {type(entries).__name__}")

        images: List[ProgramImage] = []
        for name, entry in entries.items():
            if not isinstance(entry, dict) or "path" not in entry:
                raise ValueError(f"Program {name!r}: entry needs a 'path'")

            binary_path = Path(entry["path"])
            if not binary_path.is_absolute():
                binary_path = manifest_path.parent / binary_path

            image = ProgramImage.from_binary(name, binary_path.read_bytes())

            declared = entry.get("image_id")
            if declared is not None and hex_to_bytes(declared) != image.image_id:
                raise ValueError(
                    f"Program {name!r}: declared image id {declared} does not match "
                    f"binary hash {image.image_id_hex}"
                )
            images.append(image)

        return cls(images)

    # =========================================================================
    # Lookup
    # =========================================================================

    def resolve(self, name: str) -> ProgramImage:
        """
        Resolve a program name to its image.

        Raises:
            UnknownProgram: if name is not registered
        """
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownProgram(f"Unknown program: {name}") from None

    def by_id(self, image_id: bytes) -> ProgramImage:
        """
        Resolve an image id to its image.

        Raises:
            UnknownProgram: if the id is not registered
        """
        try:
            return self._by_id[image_id]
        except KeyError:
            raise UnknownProgram(f"Unknown image id: {bytes_to_hex(image_id)}") from None

    def contains_id(self, image_id: bytes) -> bool:
        return image_id in self._by_id

    def image_ids(self) -> Dict[str, bytes]:
        """Name -> image id table."""
        return {name: image.image_id for name, image in self._by_name.items()}

    def names(self) -> List[str]:
        return sorted(self._by_name)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[ProgramImage]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)


def builtin_registry() -> ProgramRegistry:
    """Registry of the bundled development guests."""
    from zkcompose.guests import GUEST_BINARIES

    return ProgramRegistry.from_binaries(GUEST_BINARIES)
