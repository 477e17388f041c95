from __future__ import annotations

import hashlib
import json
import platform
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import networkx as nx
import numpy as np


def sha256_file(path: Path, *, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def environment_stamp() -> Dict[str, Any]:
    # numpy and networkx versions change generator streams and component order
    return {
        "python": sys.version.split()[0],
        "platform": platform.platform(),
        "numpy": np.__version__,
        "networkx": nx.__version__,
    }


def write_meta(path: Path, extra: Dict[str, Any], inputs: Iterable[Optional[Path]] = ()) -> None:
    """Write run provenance: environment, input document hashes and run-specific fields."""
    meta = {
        "env": environment_stamp(),
        "inputs_sha256": {str(p): sha256_file(Path(p)) for p in inputs if p is not None},
        "extra": extra,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8")
