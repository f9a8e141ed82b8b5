import gzip
import json
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

ERROR_PREFIX = "error_"


def serialize_payload(payload: Any, file_name: str) -> Tuple[bytes, Optional[str]]:
    """JSON-encode ``payload``; ``*.gz`` targets are gzip-compressed."""
    raw = json.dumps(payload, indent=2, ensure_ascii=False, default=str).encode(
        "utf-8"
    )
    if file_name.lower().endswith(".gz"):
        buf = BytesIO()
        with gzip.GzipFile(fileobj=buf, mode="wb") as gz:
            gz.write(raw)
        return buf.getvalue(), "gzip"
    return raw, None


def _write(out_dir: Path, file_name: str, payload: Any) -> Dict[str, Any]:
    target = Path(out_dir) / file_name
    target.parent.mkdir(parents=True, exist_ok=True)
    body, encoding = serialize_payload(payload, file_name)
    target.write_bytes(body)
    return {"path": str(target), "bytes": len(body), "encoding": encoding}


def write_output(
    ctx: Dict[str, Any], payload: Any, out_dir: Path, output_file: str
) -> Dict[str, Any]:
    if not output_file:
        raise ValueError("outputFile is required to write a query result.")
    meta = _write(out_dir, output_file, payload)
    ctx["log"].info(
        f"[output] Wrote {meta['bytes']} bytes to {meta['path']}"
    )
    return meta


def error_file_name(output_file: str) -> str:
    p = Path(output_file)
    return str(p.with_name(ERROR_PREFIX + p.name))


def write_error(
    ctx: Dict[str, Any], body: Any, out_dir: Path, output_file: str
) -> Optional[Dict[str, Any]]:
    """Persist a failed query's raw error body next to the intended output."""
    if body is None or body == "":
        return None
    meta = _write(out_dir, error_file_name(output_file), body)
    ctx["log"].error(f"[output] Error details saved to {meta['path']}")
    return meta
