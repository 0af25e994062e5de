# archive.py
from __future__ import annotations

import io
import tarfile
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

# ---------------------------------------------------------------------
# tar.gz helpers shared by workspaces, artifacts and checkout.
#
# Archives hold paths relative to the root they were taken from, in a
# deterministic order, so the same tree always packs to the same members.
# ---------------------------------------------------------------------

DEFAULT_EXCLUDES = [
    ".git/**",
    ".flowci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


def _relpath(p: Path, root: Path) -> str:
    # not resolved: symlinks are archived as links, not followed
    try:
        rel = p.relative_to(root)
    except ValueError:
        raise ValueError(f"Path {p} is outside of {root}") from None
    return str(rel).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file() or p.is_symlink():
            yield p


def _matches_any_glob(rel: str, globs: Sequence[str]) -> bool:
    rel_path = Path(rel)
    for g in globs:
        if rel_path.match(g):
            return True
        # "dir/**" should also cover files directly under dir at any depth
        if g.endswith("/**") and (rel + "/").startswith(g[:-2]):
            return True
        # "**/x" matches x at any depth, the top level included
        if g.startswith("**/"):
            parts = rel.split("/")
            if any(_matches_any_glob("/".join(parts[i:]), [g[3:]]) for i in range(len(parts))):
                return True
    return False


def resolve_globs(root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand patterns into concrete paths under root.
    Supports:
      - file path: "pyproject.toml"
      - dir path:  "target/"
      - glob:      "*.tar.gz", "reports/**/*.xml"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        key = str(p.resolve())
        if key not in seen:
            seen.add(key)
            uniq.append(p)
    return uniq


def pack(
    root: str | Path,
    patterns: Sequence[str] = (".",),
    *,
    excludes: Optional[Sequence[str]] = None,
) -> bytes:
    """Pack the files matched by patterns (relative to root) into tar.gz bytes."""
    root_p = Path(root).resolve()
    exclude_globs = list(excludes or [])
    buf = io.BytesIO()

    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for src in resolve_globs(root_p, patterns):
            files = [src] if not src.is_dir() else list(_iter_files_under(src))
            for f in files:
                rel = _relpath(f, root_p)
                if _matches_any_glob(rel, exclude_globs):
                    continue
                tar.add(str(f), arcname=rel, recursive=False)

    return buf.getvalue()


def unpack(data: bytes, dest: str | Path) -> List[str]:
    """Extract tar.gz bytes under dest; returns the member names."""
    dest_p = Path(dest)
    dest_p.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        names = tar.getnames()
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(dest_p), filter="data")
        else:
            for member in tar.getmembers():
                target = (dest_p / member.name).resolve()
                if not str(target).startswith(str(dest_p.resolve())):
                    raise ValueError(f"Refusing to extract outside destination: {member.name}")
            tar.extractall(path=str(dest_p))
    return names


def members(data: bytes) -> List[str]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        return tar.getnames()
