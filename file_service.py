"""
file_service.py — filesystem work behind the HTTP routes.

Every path handled here comes out of sandbox.safe_join(); callers pass the
shared root and an untrusted relative path, never an absolute path taken
from a request.
"""
import logging
import os
import posixpath
import re
import shutil
import subprocess
import threading
import zipfile
from datetime import datetime, timezone
from typing import Iterable, Iterator, List, Tuple
from urllib.parse import quote

from errors import FileMissing, PathEscape, TreeShareError, UploadTooLarge
from sandbox import normalize_rel_path, rel_path_from_root, safe_join

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
PREVIEW_LIMIT = 128 * 1024
SCAN_TIMEOUT_SECONDS = 120

# Extension → MIME type map (avoids python-magic cross-platform issues)
MIME_MAP = {
    "pdf":  "application/pdf",
    "png":  "image/png",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "gif":  "image/gif",
    "webp": "image/webp",
    "svg":  "image/svg+xml",
    "txt":  "text/plain",
    "md":   "text/markdown",
    "csv":  "text/csv",
    "html": "text/html",
    "css":  "text/css",
    "json": "application/json",
    "xml":  "application/xml",
    "zip":  "application/zip",
    "tar":  "application/x-tar",
    "gz":   "application/gzip",
    "mp4":  "video/mp4",
    "mp3":  "audio/mpeg",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}

# source and config files that have no text/* MIME type but preview fine
TEXT_EXTENSIONS = {
    "go", "js", "ts", "tsx", "jsx", "json", "yml", "yaml", "toml", "md",
    "txt", "log", "css", "html", "xml", "py", "rb", "rs", "java", "c",
    "cpp", "h", "sh", "sql", "ini", "cfg",
}


def detect_mime(filename: str) -> str:
    """Detect MIME type from file extension."""
    if "." in filename:
        ext = filename.rsplit(".", 1)[-1].lower()
        return MIME_MAP.get(ext, "application/octet-stream")
    return "application/octet-stream"


def _extension(filename: str) -> str:
    return filename.rsplit(".", 1)[-1].lower() if "." in filename else ""


# ─── Lookup ───────────────────────────────────────────────────────────────────

def resolve_existing(root: str, rel: str) -> Tuple[str, os.stat_result]:
    """safe_join plus stat; raises FileMissing when nothing is there."""
    target = safe_join(root, rel)
    try:
        return target, os.stat(target)
    except FileNotFoundError:
        raise FileMissing()


def list_dir(root: str, rel: str) -> List[dict]:
    rel = normalize_rel_path(rel)
    target, info = resolve_existing(root, rel)
    if not os.path.isdir(target):
        raise TreeShareError("not a directory")
    items = []
    with os.scandir(target) as it:
        for entry in it:
            entry_rel = normalize_rel_path(posixpath.join(rel, entry.name))
            # a link out of the root is described by the link itself, never its target
            follow = True
            if entry.is_symlink():
                try:
                    safe_join(root, entry_rel)
                except PathEscape:
                    follow = False
            try:
                st = entry.stat(follow_symlinks=follow)
                is_dir = entry.is_dir(follow_symlinks=follow)
            except OSError:
                # dangling symlink
                continue
            items.append({
                "name": entry.name,
                "path": entry_rel,
                "isDir": is_dir,
                "size": 0 if is_dir else st.st_size,
                "modTime": datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat(),
                "ext": ("." + _extension(entry.name)) if _extension(entry.name) else "",
                "mime": None if is_dir else detect_mime(entry.name),
            })
    items.sort(key=lambda i: (not i["isDir"], i["name"].lower()))
    return items


def breadcrumbs(rel: str) -> List[dict]:
    rel = normalize_rel_path(rel)
    crumbs = [{"name": "/", "path": ""}]
    if not rel:
        return crumbs
    current = ""
    for part in rel.split("/"):
        current = posixpath.join(current, part) if current else part
        crumbs.append({"name": part, "path": current})
    return crumbs


def preview(root: str, rel: str) -> dict:
    target, info = resolve_existing(root, rel)
    if os.path.isdir(target):
        return {"type": "directory"}
    name = os.path.basename(target)
    mime = detect_mime(name)
    if mime.startswith("image/"):
        return {"type": "image", "mime": mime}

    with open(target, "rb") as f:
        head = f.read(PREVIEW_LIMIT + 1)
    looks_text = mime.startswith("text/") or _extension(name) in TEXT_EXTENSIONS
    if not looks_text and b"\x00" not in head[:512]:
        try:
            head[:512].decode("utf-8")
            looks_text = bool(head)
        except UnicodeDecodeError:
            looks_text = False
    if not looks_text:
        return {"type": "binary", "mime": mime}

    truncated = len(head) > PREVIEW_LIMIT
    return {
        "type": "text",
        "content": head[:PREVIEW_LIMIT].decode("utf-8", errors="replace"),
        "truncated": truncated,
    }


# ─── Zip streaming ────────────────────────────────────────────────────────────

class _ZipBuffer:
    """Write-only sink for ZipFile; no tell(), so zipfile streams without seeking."""

    def __init__(self):
        self._chunks = []

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def flush(self):
        pass

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks = []
        return data


def _walk_files(base: str) -> Iterator[str]:
    """Regular files under base, in stable order. Symlinks are skipped entirely."""
    for dirpath, dirnames, filenames in os.walk(base, followlinks=False):
        dirnames[:] = sorted(d for d in dirnames if not os.path.islink(os.path.join(dirpath, d)))
        for fname in sorted(filenames):
            path = os.path.join(dirpath, fname)
            if os.path.islink(path) or not os.path.isfile(path):
                continue
            yield path


def zip_name_for(rel: str) -> str:
    rel = normalize_rel_path(rel)
    if not rel:
        return "treeshare-root.zip"
    return posixpath.basename(rel) + ".zip"


def content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


def iter_zip(root: str, rel: str) -> Iterator[bytes]:
    """
    Stream a zip of rel (a file, or a whole subtree) chunk by chunk.

    The target is checked up front so a bad path fails before any bytes are
    sent; files that vanish mid-walk are skipped.
    """
    rel = normalize_rel_path(rel)
    target, _ = resolve_existing(root, rel)
    return _zip_chunks(root, rel, target)


def _zip_chunks(root: str, rel: str, target: str) -> Iterator[bytes]:
    sink = _ZipBuffer()
    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        if os.path.isdir(target):
            top = posixpath.basename(rel) if rel else "root"
            sources = ((p, posixpath.join(top, os.path.relpath(p, target).replace(os.sep, "/")))
                       for p in _walk_files(target))
        else:
            sources = iter([(target, os.path.basename(target))])

        for path, arcname in sources:
            try:
                # the walk never follows links, but re-check the file itself
                safe_join(root, rel_path_from_root(root, path))
                zinfo = zipfile.ZipInfo.from_file(path, arcname)
                zinfo.compress_type = zipfile.ZIP_DEFLATED
                with open(path, "rb") as src, zf.open(zinfo, mode="w", force_zip64=True) as dest:
                    for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                        dest.write(chunk)
                        data = sink.drain()
                        if data:
                            yield data
            except (OSError, PathEscape) as e:
                logger.warning(f"Skipping {arcname} in zip: {e}")
            data = sink.drain()
            if data:
                yield data
    data = sink.drain()
    if data:
        yield data


# ─── Upload ───────────────────────────────────────────────────────────────────

def upload_base(requested: str, upload_subdir: str) -> str:
    base = normalize_rel_path(requested)
    if upload_subdir:
        base = normalize_rel_path(posixpath.join(base, normalize_rel_path(upload_subdir)))
    return base


def clean_upload_name(raw: str) -> str:
    """Last path segment of a client-supplied filename, or "" if unusable."""
    name = posixpath.basename((raw or "").replace("\\", "/")).strip()
    if name in ("", ".", ".."):
        return ""
    return name


def choose_collision_path(dest: str) -> str:
    if not os.path.lexists(dest):
        return dest
    directory = os.path.dirname(dest)
    base, ext = os.path.splitext(os.path.basename(dest))
    for i in range(1, 100000):
        candidate = os.path.join(directory, f"{base}_{i}{ext}")
        if not os.path.lexists(candidate):
            return candidate
    return os.path.join(directory, f"{base}_{int(datetime.now().timestamp() * 1e9)}{ext}")


def _write_atomic(dest: str, src, budget: int) -> int:
    """Copy src into dest via dest.part; returns bytes written or raises UploadTooLarge."""
    tmp = dest + ".part"
    written = 0
    try:
        with open(tmp, "wb") as out:
            for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                written += len(chunk)
                if written > budget:
                    raise UploadTooLarge()
                out.write(chunk)
        os.replace(tmp, dest)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    return written


def save_uploads(root: str, base_rel: str, files: Iterable, settings) -> Tuple[List[str], List[str]]:
    """
    Store uploaded files under base_rel following the upload policy in settings.

    files are objects with .filename and a readable .file (FastAPI UploadFile).
    Per-file policy rejections are collected as issues; exceeding the total
    size ceiling aborts the whole request with UploadTooLarge.
    """
    allow_re = re.compile(settings.upload_allow_regex) if settings.upload_allow_regex.strip() else None
    deny_re = re.compile(settings.upload_deny_regex) if settings.upload_deny_regex.strip() else None
    budget = settings.max_upload_bytes

    uploaded: List[str] = []
    issues: List[str] = []
    for upload in files:
        filename = clean_upload_name(upload.filename)
        if not filename:
            issues.append("invalid filename")
            continue
        if allow_re is not None and not allow_re.search(filename):
            issues.append(f"rejected by allow policy: {filename}")
            continue
        if deny_re is not None and deny_re.search(filename):
            issues.append(f"rejected by deny policy: {filename}")
            continue

        try:
            dir_abs = safe_join(root, base_rel)
            os.makedirs(dir_abs, exist_ok=True)
            # the leaf goes through the sandbox too, so a planted symlink is refused
            dest = safe_join(root, posixpath.join(base_rel, filename))
        except PathEscape:
            issues.append(f"invalid destination for {filename}")
            continue
        except OSError as e:
            logger.warning(f"mkdir failed for upload {filename}: {e}")
            issues.append(f"mkdir failed for {filename}")
            continue
        if os.path.isdir(dest):
            issues.append(f"write failed for {filename}")
            continue
        if settings.collision_policy != "overwrite":
            dest = choose_collision_path(dest)

        try:
            budget -= _write_atomic(dest, upload.file, budget)
        except OSError as e:
            logger.warning(f"write failed for upload {filename}: {e}")
            issues.append(f"write failed for {filename}")
            continue

        uploaded.append(rel_path_from_root(root, dest))
        run_scan_hook(settings.virus_scan_command, dest)
    return uploaded, issues


def run_scan_hook(command: str, file_path: str) -> None:
    """Fire-and-forget scan of a stored upload; the path is passed in TREESHARE_FILE."""
    command = (command or "").strip()
    if not command:
        return

    def _run():
        env = dict(os.environ, TREESHARE_FILE=file_path)
        try:
            result = subprocess.run(command, shell=True, env=env, timeout=SCAN_TIMEOUT_SECONDS,
                                    stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
            if result.returncode != 0:
                logger.warning(f"Scan hook exited {result.returncode} for {file_path}: "
                               f"{result.stderr.decode(errors='replace').strip()}")
        except subprocess.TimeoutExpired:
            logger.warning(f"Scan hook timed out for {file_path}")
        except OSError as e:
            logger.warning(f"Scan hook failed for {file_path}: {e}")

    threading.Thread(target=_run, name="scan-hook", daemon=True).start()


# ─── Mutations ────────────────────────────────────────────────────────────────

def delete_path(root: str, rel: str) -> str:
    rel = normalize_rel_path(rel)
    if not rel:
        raise TreeShareError("refusing to delete root")
    target = safe_join(root, rel)
    if os.path.islink(target) or os.path.isfile(target):
        os.remove(target)
    elif os.path.isdir(target):
        shutil.rmtree(target)
    else:
        raise FileMissing()
    return rel


def rename_path(root: str, rel: str, new_name: str) -> str:
    """Rename within the same directory; new_name must be a single segment."""
    rel = normalize_rel_path(rel)
    new_name = (new_name or "").strip()
    if (not rel or not new_name or new_name in (".", "..")
            or "/" in new_name or "\\" in new_name or "\x00" in new_name):
        raise TreeShareError("invalid rename request")
    source = safe_join(root, rel)
    if not os.path.lexists(source):
        raise FileMissing()
    parent = posixpath.dirname(rel)
    new_rel = posixpath.join(parent, new_name) if parent else new_name
    target = safe_join(root, new_rel)
    if os.path.lexists(target):
        raise TreeShareError("target already exists")
    os.rename(source, target)
    return new_rel
