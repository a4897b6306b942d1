"""
Signature Locator

Finds signature image bytes for a caller-supplied token. The token may be a
signature/asset id, a path under the uploads directory, or a loose filename
fragment. Strategies run in order and the first one that yields bytes wins:

1. AssetIdStrategy        - token is a signature or file reference id
2. LiteralPathStrategy    - token is a path (confined to the uploads root)
3. DirectoryMatchStrategy - token names a file in the signature directory
4. FirstAvailableStrategy - any image in the signature directory

Nothing found is not an error: the letter renders without a signature.
"""

import logging
import uuid
from pathlib import Path
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import FileReferenceDB, SignatureDB
from utils.errors import NotFoundError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".gif", ".tiff")
# Extensions tried when the token is a bare filename stem
PROBE_EXTENSIONS = ("", ".jpg", ".jpeg", ".png", ".gif", ".bmp")
FALLBACK_EXTENSIONS = (".jpg", ".jpeg", ".png")


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


def _list_images(directory: Path, extensions: Sequence[str] = IMAGE_EXTENSIONS) -> List[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() in extensions
    )


# ==================== ASSET STORE ====================

class AssetStore:
    """
    Stored-asset lookup backed by file_references.

    Relative storage paths are resolved against the uploads root.
    """

    def __init__(self, db: AsyncSession, uploads_dir: Path):
        self.db = db
        self.uploads_dir = Path(uploads_dir)

    async def get_asset_path(self, asset_id: str) -> Path:
        """
        Resolve a signature id or file reference id to a file on disk.

        Raises:
            NotFoundError: no record, or the record points at a missing file
        """
        reference = await self.db.get(FileReferenceDB, asset_id)
        if reference is None:
            result = await self.db.execute(
                select(SignatureDB).where(SignatureDB.id == asset_id)
            )
            signature = result.scalar_one_or_none()
            if signature is not None:
                reference = signature.file_reference

        if reference is None:
            raise NotFoundError(f"Asset {asset_id} not found", parameter="assetId")

        path = Path(reference.storage_path)
        if not path.is_absolute():
            path = self.uploads_dir / path
        if not path.is_file():
            raise NotFoundError(f"Asset {asset_id} file is missing: {path.name}", parameter="assetId")
        return path

    async def download_bytes(self, asset_id: str) -> bytes:
        path = await self.get_asset_path(asset_id)
        return path.read_bytes()


# ==================== STRATEGIES ====================

class SignatureStrategy:
    name = "base"

    async def locate(self, token: str) -> Optional[bytes]:
        raise NotImplementedError


class AssetIdStrategy(SignatureStrategy):
    name = "asset-id"

    def __init__(self, asset_store: AssetStore):
        self.asset_store = asset_store

    async def locate(self, token: str) -> Optional[bytes]:
        try:
            return await self.asset_store.download_bytes(token)
        except NotFoundError:
            return None


class LiteralPathStrategy(SignatureStrategy):
    name = "literal-path"

    def __init__(self, uploads_dir: Path):
        self.uploads_dir = Path(uploads_dir)

    async def locate(self, token: str) -> Optional[bytes]:
        path = Path(token)
        if not path.is_absolute():
            path = self.uploads_dir / path
        if not _is_within(path, self.uploads_dir):
            logger.warning(f"Signature path outside uploads root ignored: {token}")
            return None
        if path.is_file():
            return path.read_bytes()
        return None


class DirectoryMatchStrategy(SignatureStrategy):
    """
    Match the token against files in the signature directory.

    Order: token with each probe extension, exact stem or filename
    (case-insensitive), UUID-normalized stem, then substring either way.
    """
    name = "directory-match"

    def __init__(self, signature_dir: Path):
        self.signature_dir = Path(signature_dir)

    async def locate(self, token: str) -> Optional[bytes]:
        token = Path(token).name.strip()
        if not token:
            return None

        for extension in PROBE_EXTENSIONS:
            candidate = self.signature_dir / f"{token}{extension}"
            if candidate.is_file() and _is_within(candidate, self.signature_dir):
                return candidate.read_bytes()

        match = self._match(token, _list_images(self.signature_dir))
        if match is not None:
            logger.info(f"Signature matched by filename: {match.name}")
            return match.read_bytes()
        return None

    @staticmethod
    def _match(token: str, files: List[Path]) -> Optional[Path]:
        lowered = token.lower()
        for f in files:
            if f.stem.lower() == lowered or f.name.lower() == lowered:
                return f

        try:
            normalized = str(uuid.UUID(token))
        except ValueError:
            normalized = None
        if normalized:
            for f in files:
                if f.stem.lower() == normalized:
                    return f

        for f in files:
            stem = f.stem.lower()
            if lowered in stem or stem in lowered:
                return f
        return None


class FirstAvailableStrategy(SignatureStrategy):
    name = "first-available"

    def __init__(self, signature_dir: Path):
        self.signature_dir = Path(signature_dir)

    async def locate(self, token: str) -> Optional[bytes]:
        files = _list_images(self.signature_dir, FALLBACK_EXTENSIONS)
        if not files:
            return None
        logger.info(f"Using fallback signature {files[0].name}")
        return files[0].read_bytes()


# ==================== LOCATOR ====================

class SignatureLocator:
    """Runs strategies in order with first-success semantics."""

    def __init__(self, strategies: List[SignatureStrategy]):
        self.strategies = strategies

    @classmethod
    def default(cls, asset_store: AssetStore, uploads_dir: Path, signature_dir: Path) -> "SignatureLocator":
        return cls([
            AssetIdStrategy(asset_store),
            LiteralPathStrategy(uploads_dir),
            DirectoryMatchStrategy(signature_dir),
            FirstAvailableStrategy(signature_dir),
        ])

    async def locate(self, token: Optional[str]) -> Optional[bytes]:
        if not token or not token.strip():
            return None

        for strategy in self.strategies:
            try:
                found = await strategy.locate(token.strip())
            except OSError as e:
                logger.warning(f"Signature strategy {strategy.name} failed for {token}: {e}")
                continue
            if found:
                logger.info(f"Signature for {token} found via {strategy.name}")
                return found

        logger.info(f"No signature found for {token}; rendering without one")
        return None
