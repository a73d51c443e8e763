import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from prefect_soci.provider.store import OciLayoutStore

logger = logging.getLogger(__name__)

artifacts_store_name = "store"
artifacts_db_name = "artifacts.db"


class Workspace:
    """
    Transient directory holding the images and SOCI artifacts of one run.

    Every run gets its own uniquely named directory, so runs sharing a
    process never see each other's content.
    """

    def __init__(self, root: Path):
        self.root = root
        self.store = OciLayoutStore(self.root / artifacts_store_name)

    @property
    def artifacts_db_path(self) -> Path:
        return self.root / artifacts_db_name

    @classmethod
    def create(cls, base_dir: Optional[str] = None) -> "Workspace":
        logger.info("Creating a directory to store images and SOCI artifacts")
        root = Path(tempfile.mkdtemp(prefix="soci", dir=base_dir))
        try:
            return cls(root)
        except BaseException:
            shutil.rmtree(root, ignore_errors=True)
            raise

    def cleanup(self) -> None:
        """
        Remove the workspace. Failures are logged, not raised.
        """
        logger.info("Removing all files in %s", self.root)
        try:
            shutil.rmtree(self.root)
        except OSError as e:
            logger.error("Clean up error: %s", e)
