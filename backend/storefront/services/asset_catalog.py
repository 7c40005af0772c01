"""ZIP image bundle indexing and on-demand extraction.

Parse time only reads the central directory; entry bytes are decompressed at
commit time, and only for the files that valid rows actually reference.
"""
import io
import logging
import posixpath
import zipfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from storefront.core.config import settings
from storefront.services.import_errors import FormatError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")

CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


def file_extension(filename: str) -> str:
    return posixpath.splitext(filename.lower())[1]


def is_allowed_image(filename: str) -> bool:
    return file_extension(filename) in ALLOWED_IMAGE_EXTENSIONS


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(file_extension(filename), "application/octet-stream")


@dataclass(frozen=True)
class AssetEntry:
    filename: str
    size: int
    archive_path: str
    compressed_size: int = 0


class AssetCatalog:
    """Basename → AssetEntry, looked up case-insensitively."""

    def __init__(self, entries: Iterable[AssetEntry] = ()):
        self._entries: dict[str, AssetEntry] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: AssetEntry) -> bool:
        key = entry.filename.lower()
        if key in self._entries:
            return False
        self._entries[key] = entry
        return True

    def get(self, filename: str) -> AssetEntry | None:
        return self._entries.get(filename.strip().lower())

    def __contains__(self, filename: object) -> bool:
        return isinstance(filename, str) and self.get(filename) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[AssetEntry]:
        return iter(self._entries.values())

    def __bool__(self) -> bool:
        return bool(self._entries)


@dataclass
class AssetIndexResult:
    files: AssetCatalog
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExtractedAsset:
    filename: str
    data: bytes = field(repr=False)
    size: int
    content_type: str


# ─── Indexing ───

def _skip(info: zipfile.ZipInfo) -> bool:
    if info.is_dir():
        return True
    path = info.filename
    basename = posixpath.basename(path)
    if not basename or basename.startswith("."):
        return True
    if "__MACOSX" in path.split("/"):
        return True
    return not is_allowed_image(basename)


def index_zip(buffer: bytes) -> AssetIndexResult:
    """Build an AssetCatalog from the archive's directory without decompressing."""
    mb = 1024 * 1024
    if len(buffer) > settings.MAX_ZIP_BYTES:
        raise FormatError(f"ZIP file exceeds maximum size of {settings.MAX_ZIP_BYTES // mb}MB")

    try:
        with zipfile.ZipFile(io.BytesIO(buffer)) as archive:
            infos = archive.infolist()
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError, OSError) as exc:
        raise FormatError("Not a readable ZIP archive", details=[str(exc)]) from exc

    if len(infos) > settings.MAX_ZIP_ENTRIES:
        raise FormatError(f"ZIP file has {len(infos)} entries; the limit is {settings.MAX_ZIP_ENTRIES}")

    declared = sum(info.file_size for info in infos)
    if declared > settings.MAX_ZIP_UNCOMPRESSED_BYTES:
        raise FormatError(
            f"ZIP contents would expand to more than {settings.MAX_ZIP_UNCOMPRESSED_BYTES // mb}MB"
        )

    catalog = AssetCatalog()
    errors: list[str] = []
    for info in infos:
        if info.file_size and info.file_size / max(info.compress_size, 1) > settings.MAX_ZIP_COMPRESSION_RATIO:
            raise FormatError(f"Suspicious compression ratio for entry {info.filename}")
        if _skip(info):
            continue

        basename = posixpath.basename(info.filename)
        if info.file_size > settings.MAX_IMAGE_BYTES:
            errors.append(
                f"File {basename} exceeds maximum image size of {settings.MAX_IMAGE_BYTES // mb}MB"
            )
            continue

        entry = AssetEntry(
            filename=basename,
            size=info.file_size,
            archive_path=info.filename,
            compressed_size=info.compress_size,
        )
        if not catalog.add(entry):
            kept = catalog.get(basename)
            errors.append(
                f"Duplicate file name {basename} at {info.filename}; using {kept.archive_path}"
            )

    if not catalog:
        errors.append("No valid image files found in ZIP")

    logger.info("Indexed ZIP: %d images, %d issues", len(catalog), len(errors))
    return AssetIndexResult(files=catalog, errors=errors)


# ─── Extraction ───

def extract_entries(
    buffer: bytes,
    catalog: AssetCatalog,
    filenames: Iterable[str],
) -> dict[str, ExtractedAsset]:
    """Decompress the requested entries, keyed by lower-cased basename.

    Entries that are missing, oversized once decompressed or unreadable are
    left out of the result; callers treat an absent key as unresolved.
    """
    wanted = {name.strip().lower() for name in filenames if name.strip()}
    extracted: dict[str, ExtractedAsset] = {}
    if not wanted:
        return extracted

    with zipfile.ZipFile(io.BytesIO(buffer)) as archive:
        for key in sorted(wanted):
            entry = catalog.get(key)
            if entry is None:
                continue
            try:
                with archive.open(entry.archive_path) as handle:
                    data = handle.read(settings.MAX_IMAGE_BYTES + 1)
            except (KeyError, zipfile.BadZipFile, RuntimeError, OSError) as exc:
                logger.warning("Could not extract %s from ZIP: %s", entry.archive_path, exc)
                continue
            if len(data) > settings.MAX_IMAGE_BYTES:
                logger.warning("Entry %s exceeds the image size limit once decompressed", entry.archive_path)
                continue
            extracted[key] = ExtractedAsset(
                filename=entry.filename,
                data=data,
                size=len(data),
                content_type=content_type_for(entry.filename),
            )

    logger.info("Extracted %d of %d requested ZIP entries", len(extracted), len(wanted))
    return extracted
