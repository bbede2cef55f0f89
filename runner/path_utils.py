from __future__ import annotations

from pathlib import Path
from dispatcher import config as dispatcher_config


class PathTranslator:
    """
    Translate paths between the dispatcher's view and the docker host's
    view. They differ when the dispatcher itself runs in a container and
    shares the submission directory with the host through a volume.
    """

    def __init__(self, cfg: dict | None = None):
        self.cfg = cfg if cfg is not None else \
            dispatcher_config.get_submission_config()
        self.working_dir = Path(self.cfg["working_dir"]).expanduser()
        self.sandbox_root = (Path(
            self.cfg.get("sandbox_root",
                         self.working_dir.parent)).expanduser().resolve())
        self.host_root = (Path(self.cfg.get(
            "host_root", self.sandbox_root)).expanduser().resolve())

    def to_host(self, path: str | Path) -> Path:
        """
        Convert a dispatcher path (relative paths are taken from the
        sandbox root) to the host path used in docker binds.
        """
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = (self.sandbox_root / p).resolve()
        try:
            rel = p.resolve().relative_to(self.sandbox_root)
            return self.host_root / rel
        except ValueError:
            return p.resolve()
