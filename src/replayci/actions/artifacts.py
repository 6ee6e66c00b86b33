# actions/artifacts.py
from __future__ import annotations

import io
import tarfile
from pathlib import Path
from typing import Any, Dict, List

from ..executor import StepContext, StepOutcome
from . import register_action


# ---------------------------------------------------------------------
# Packing
# ---------------------------------------------------------------------

def _iter_files_under(root: Path) -> List[Path]:
    # deterministic traversal
    return [p for p in sorted(root.rglob("*")) if p.is_file()]


def pack(paths: List[Path], base: Path) -> bytes:
    """Tar+gzip `paths` (files or directories) with names relative to `base`."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for src in paths:
            src = src.resolve()
            files = [src] if src.is_file() else _iter_files_under(src)
            for f in files:
                try:
                    arcname = f.relative_to(base.resolve()).as_posix()
                except ValueError:
                    arcname = f.name
                tar.add(str(f), arcname=arcname, recursive=False)
    return buf.getvalue()


def unpack(payload: bytes, dest: Path) -> List[str]:
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
        members = [m for m in tar.getmembers() if m.isfile()]
        for m in members:
            target = (dest / m.name).resolve()
            if dest.resolve() not in target.parents:
                raise ValueError(f"refusing to extract outside destination: {m.name}")
        if hasattr(tarfile, "data_filter"):
            tar.extractall(dest, members=members, filter="data")
        else:
            tar.extractall(dest, members=members)
    return [m.name for m in members]


def _split_paths(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [line.strip() for line in str(value or "").splitlines() if line.strip()]


# ---------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------

@register_action("upload-artifact")
def upload_artifact(context: StepContext, inputs: Dict[str, Any]) -> StepOutcome:
    name = str(inputs.get("name") or "artifact")
    patterns = _split_paths(inputs.get("path"))
    if not patterns:
        return StepOutcome(exit_code=1, output="upload-artifact: 'path' input is required")

    paths: List[Path] = []
    for pat in patterns:
        p = context.workdir / pat
        if p.exists():
            paths.append(p)
            continue
        paths.extend(sorted(context.workdir.glob(pat)))

    if not paths:
        if str(inputs.get("if-no-files-found", "error")).lower() == "error":
            return StepOutcome(exit_code=1, output=f"upload-artifact: no files found for {patterns}")
        return StepOutcome(exit_code=0, output=f"upload-artifact: no files found for {patterns}, nothing uploaded")

    artifact = context.artifacts.put(name, pack(paths, context.workdir))
    return StepOutcome(exit_code=0, output=f"uploaded artifact '{name}' ({artifact.size} bytes)")


@register_action("download-artifact")
def download_artifact(context: StepContext, inputs: Dict[str, Any]) -> StepOutcome:
    name = str(inputs.get("name") or "artifact")
    dest = context.workdir / str(inputs.get("path") or ".")

    payload = context.artifacts.get(name)
    files = unpack(payload, dest)
    return StepOutcome(exit_code=0, output=f"downloaded artifact '{name}' ({len(files)} files) to {dest}")
