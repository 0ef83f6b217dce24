from .boot_image import BootArtifact, BootImageBuilder
from .filesystem import FilesystemArtifact, FilesystemAssembler, write_disk_metadata

__all__ = [
    "BootArtifact",
    "BootImageBuilder",
    "FilesystemArtifact",
    "FilesystemAssembler",
    "write_disk_metadata",
]
