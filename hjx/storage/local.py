import os
import tempfile
from pathlib import Path

from hjx.storage.base import StorageHandle, READWRITE


class DirectoryHandle(StorageHandle):
    """A directory on a local or mounted filesystem (USB drive, synced folder, NAS)."""

    kind = "directory"

    def __init__(self, path, granted=None):
        super().__init__(granted)
        self.path = Path(path).expanduser()

    @property
    def label(self):
        return str(self.path)

    def _probe(self, mode):
        if not self.path.is_dir():
            return False
        flags = os.R_OK | os.X_OK
        if mode == READWRITE:
            flags |= os.W_OK
        return os.access(self.path, flags)

    def read_text(self, name):
        return (self.path / name).read_text(encoding="utf-8")

    def write_text(self, name, text):
        target = self.path / name
        fd, tmp = tempfile.mkstemp(dir=self.path, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return target

    def to_dict(self):
        return {"kind": self.kind, "path": str(self.path), "granted": self.granted}
