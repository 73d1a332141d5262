import os
import sys
import stat
import shutil
import tarfile
import zipfile
import tempfile
import subprocess
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import httpx

from ..config import settings
from .archives import extract_archive, is_archive
from ..core.errors import ToolInstallFailed, ToolNotInstalled

logger = logging.getLogger(__name__)


class ToolKind(str, Enum):
    HEIMDALL = "heimdall"
    EDL = "edl"
    MTKCLIENT = "mtkclient"


@dataclass(frozen=True)
class ToolSpec:
    """Where a vendor tool lives and where to get it"""
    kind: ToolKind
    name: str
    executable_names: Tuple[str, ...]
    install_dir: str
    url: str
    fallback_urls: Tuple[str, ...] = ()
    system_paths: Tuple[str, ...] = ()
    requires_interpreter: bool = False
    single_executable: bool = False


TOOL_SPECS: Dict[ToolKind, ToolSpec] = {
    ToolKind.HEIMDALL: ToolSpec(
        kind=ToolKind.HEIMDALL,
        name="Heimdall",
        executable_names=("heimdall", "heimdall.exe"),
        install_dir="heimdall",
        url="https://github.com/Benjamin-Dobell/Heimdall/releases/download/v1.4.2/heimdall-suite-1.4.2-win32.zip",
        fallback_urls=(
            "https://bitbucket.org/benjamin_dobell/heimdall/downloads/heimdall-suite-1.4.0-win32.zip",
        ),
        system_paths=(
            "/usr/bin/heimdall",
            "/usr/local/bin/heimdall",
            "/opt/homebrew/bin/heimdall",
            r"C:\Program Files\Heimdall\heimdall.exe",
            r"C:\Program Files (x86)\Heimdall\heimdall.exe",
            r"C:\Heimdall\heimdall.exe",
        ),
    ),
    ToolKind.EDL: ToolSpec(
        kind=ToolKind.EDL,
        name="EDL Client (bkerler/edl)",
        executable_names=("edl.py", "edl"),
        install_dir="edl",
        url="https://github.com/bkerler/edl/archive/refs/heads/master.zip",
        fallback_urls=(
            "https://codeload.github.com/bkerler/edl/zip/refs/heads/master",
        ),
        system_paths=(
            "/opt/edl/edl.py",
            os.path.expanduser("~/edl/edl.py"),
        ),
        requires_interpreter=True,
    ),
    ToolKind.MTKCLIENT: ToolSpec(
        kind=ToolKind.MTKCLIENT,
        name="MTKClient (bkerler/mtkclient)",
        executable_names=("mtk.py", "mtk"),
        install_dir="mtkclient",
        url="https://github.com/bkerler/mtkclient/archive/refs/heads/main.zip",
        fallback_urls=(
            "https://codeload.github.com/bkerler/mtkclient/zip/refs/heads/main",
        ),
        system_paths=(
            "/opt/mtkclient/mtk.py",
            os.path.expanduser("~/mtkclient/mtk.py"),
            os.path.expanduser("~/.local/share/mtkclient/mtk.py"),
        ),
        requires_interpreter=True,
    ),
}

INTERPRETER_PATHS = (
    r"C:\Python312\python.exe",
    r"C:\Python311\python.exe",
    r"C:\Python310\python.exe",
    "/usr/bin/python3",
    "/usr/local/bin/python3",
)


@dataclass(frozen=True)
class ToolHandle:
    """Resolved location of a vendor tool"""
    kind: ToolKind
    path: str
    interpreter: Optional[str] = None
    working_dir: Optional[str] = None

    @property
    def command(self) -> List[str]:
        """Command prefix to which operation arguments are appended"""
        if self.interpreter:
            return [self.interpreter, self.path]
        return [self.path]


@dataclass(frozen=True)
class ToolInstallResult:
    kind: ToolKind
    source_url: str
    size_bytes: int
    handle: ToolHandle


def check_tool_availability(tool_path: str, timeout: int = 5) -> bool:
    """Check if a tool runs successfully with --version"""
    if not tool_path:
        return False
    try:
        result = subprocess.run(
            [tool_path, "--version"],
            capture_output=True,
            timeout=timeout,
        )
        return result.returncode == 0
    except (OSError, subprocess.SubprocessError):
        return False


def _is_script(path: str) -> bool:
    return path.endswith(".py")


def _copy_tree(source: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    for item in source.iterdir():
        target = dest / item.name
        if item.is_dir():
            _copy_tree(item, target)
        else:
            shutil.copy2(item, target)


class ToolResolver:
    """
    Locates vendor tools and installs them into the managed tools directory.

    Resolution order: managed tools directory (recursive), common system
    install paths, then the executable search path. Script tools also need a
    Python runtime, found by trying a fixed candidate list.

    Install flow: primary URL, then fallback URLs in declared order. A download
    only counts if the response is 2xx and the body is at least
    ``min_download_bytes`` long (small bodies are error pages). Archives are
    unpacked, single executables copied. Re-resolving after an install finds
    the tool in the managed directory without touching the network.
    """

    def __init__(
        self,
        tools_dir: Optional[Path] = None,
        client: Optional[httpx.Client] = None,
        specs: Optional[Dict[ToolKind, ToolSpec]] = None,
        interpreter_candidates: Optional[List[str]] = None,
        min_download_bytes: Optional[int] = None,
    ):
        self.tools_dir = Path(tools_dir) if tools_dir else settings.tools_path
        self.specs = specs or TOOL_SPECS
        self.min_download_bytes = (
            min_download_bytes if min_download_bytes is not None else settings.DOWNLOAD_MIN_BYTES
        )
        if interpreter_candidates is None:
            interpreter_candidates = [sys.executable] + settings.python_candidates_list + list(INTERPRETER_PATHS)
        self.interpreter_candidates = interpreter_candidates

        self._client = client
        self._cache: Dict[ToolKind, ToolHandle] = {}
        self._interpreter: Optional[str] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                headers={"User-Agent": settings.USER_AGENT},
                follow_redirects=True,
                timeout=float(settings.DOWNLOAD_TIMEOUT_SEC),
            )
        return self._client

    def spec(self, kind: ToolKind) -> ToolSpec:
        try:
            return self.specs[ToolKind(kind)]
        except (KeyError, ValueError):
            raise ToolNotInstalled(f"Unknown tool: {kind}")

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _find_in_managed_dir(self, spec: ToolSpec) -> Optional[str]:
        tool_root = self.tools_dir / spec.install_dir
        if not tool_root.exists():
            return None
        for exe_name in spec.executable_names:
            direct = tool_root / exe_name
            if direct.is_file():
                return str(direct)
            # Archives usually unpack into a versioned subfolder (edl-master/, mtkclient-main/)
            for candidate in sorted(tool_root.rglob(exe_name)):
                if candidate.is_file():
                    return str(candidate)
        return None

    def _find_on_system(self, spec: ToolSpec) -> Optional[str]:
        for path in spec.system_paths:
            if path and os.path.isfile(path):
                return path
        for exe_name in spec.executable_names:
            found = shutil.which(exe_name)
            if found:
                return found
        return None

    def find_interpreter(self) -> Optional[str]:
        """Return the first interpreter candidate whose --version exits 0"""
        if self._interpreter:
            return self._interpreter
        for candidate in self.interpreter_candidates:
            if not candidate:
                continue
            if os.path.isabs(candidate) and not os.path.isfile(candidate):
                continue
            if check_tool_availability(candidate):
                logger.debug(f"Using interpreter: {candidate}")
                self._interpreter = candidate
                return candidate
        return None

    def resolve(self, kind: ToolKind) -> Optional[ToolHandle]:
        """Locate an installed tool. Returns None when it is not installed."""
        kind = ToolKind(kind)
        if kind in self._cache:
            return self._cache[kind]

        spec = self.spec(kind)
        path = self._find_in_managed_dir(spec) or self._find_on_system(spec)
        if not path:
            logger.debug(f"{spec.name} not found")
            return None

        interpreter = None
        if spec.requires_interpreter and _is_script(path):
            interpreter = self.find_interpreter()
            if not interpreter:
                raise ToolNotInstalled(
                    f"{spec.name} found at {path} but no Python runtime is available. "
                    f"Please install Python 3.8+"
                )

        handle = ToolHandle(
            kind=kind,
            path=path,
            interpreter=interpreter,
            working_dir=os.path.dirname(path) if interpreter else None,
        )
        logger.info(f"Resolved {spec.name}: {path}")
        self._cache[kind] = handle
        return handle

    def invalidate(self, kind: Optional[ToolKind] = None) -> None:
        if kind is None:
            self._cache.clear()
        else:
            self._cache.pop(ToolKind(kind), None)

    def ensure(self, kind: ToolKind) -> ToolHandle:
        """Resolve a tool, installing it first if it is missing."""
        handle = self.resolve(kind)
        if handle:
            return handle
        return self.install(kind).handle

    def status(self) -> List[Dict[str, object]]:
        """Installed state of every known tool"""
        tools = []
        for kind, spec in self.specs.items():
            try:
                handle = self.resolve(kind)
                error = None
            except ToolNotInstalled as e:
                handle = None
                error = str(e)
            tools.append({
                "kind": kind.value,
                "name": spec.name,
                "installed": handle is not None,
                "path": handle.path if handle else None,
                "interpreter": handle.interpreter if handle else None,
                "download_url": spec.url,
                "error": error,
            })
        return tools

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def _download(self, url: str, destination: Path) -> bool:
        """Fetch one URL into destination. Returns True only for a usable artifact."""
        try:
            logger.debug(f"Downloading from: {url}")
            with self.client.stream("GET", url) as response:
                if response.status_code < 200 or response.status_code >= 300:
                    logger.warning(f"HTTP {response.status_code} - {url}")
                    return False

                downloaded = 0
                with open(destination, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=8192):
                        f.write(chunk)
                        downloaded += len(chunk)
        except httpx.HTTPError as e:
            logger.warning(f"Network error downloading {url}: {e}")
            return False

        if downloaded < self.min_download_bytes:
            try:
                preview = destination.read_bytes()[:200].decode("utf-8", errors="replace")
            except OSError:
                preview = ""
            logger.warning(f"Download from {url} returned only {downloaded} bytes, treating as invalid: {preview!r}")
            destination.unlink(missing_ok=True)
            return False

        logger.info(f"Downloaded {downloaded // 1024} KB from {url}")
        return True

    def _unpack(self, spec: ToolSpec, artifact: Path, url: str) -> None:
        target_dir = self.tools_dir / spec.install_dir
        target_dir.mkdir(parents=True, exist_ok=True)

        if spec.single_executable or not is_archive(artifact):
            file_name = os.path.basename(httpx.URL(url).path)
            if file_name not in spec.executable_names:
                file_name = spec.executable_names[0]
            dest = target_dir / file_name
            shutil.copy2(artifact, dest)
            dest.chmod(dest.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            return

        extract_dir = Path(tempfile.mkdtemp(prefix=f"{spec.install_dir}_extract_", dir=self.tools_dir))
        try:
            extract_archive(artifact, extract_dir)
            _copy_tree(extract_dir, target_dir)
        finally:
            shutil.rmtree(extract_dir, ignore_errors=True)

        # Extracted binaries lose their mode bits inside zip archives
        for exe_name in spec.executable_names:
            for candidate in target_dir.rglob(exe_name):
                if candidate.is_file() and not _is_script(candidate.name):
                    candidate.chmod(candidate.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    def install(self, kind: ToolKind) -> ToolInstallResult:
        """Download and install a tool, trying fallback mirrors in order."""
        spec = self.spec(kind)
        self.tools_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Downloading {spec.name}...")

        urls = [spec.url] + list(spec.fallback_urls)
        fd, tmp_name = tempfile.mkstemp(prefix=f"{spec.install_dir}_", suffix=".download", dir=self.tools_dir)
        os.close(fd)
        artifact = Path(tmp_name)

        try:
            source_url = None
            for index, url in enumerate(urls):
                if index > 0:
                    logger.info(f"Primary download failed. Trying fallback {index}/{len(urls) - 1}...")
                if self._download(url, artifact):
                    source_url = url
                    break

            if source_url is None:
                raise ToolInstallFailed(f"Failed to download {spec.name} from all sources")

            size = artifact.stat().st_size
            try:
                self._unpack(spec, artifact, source_url)
            except (OSError, zipfile.BadZipFile, tarfile.TarError) as e:
                raise ToolInstallFailed(f"Failed to unpack {spec.name}: {e}") from e
        finally:
            artifact.unlink(missing_ok=True)

        self.invalidate(spec.kind)
        handle = self.resolve(spec.kind)
        if not handle:
            raise ToolInstallFailed(
                f"{spec.name} downloaded but none of {', '.join(spec.executable_names)} was found after unpacking"
            )

        logger.info(f"{spec.name} installed to: {handle.path}")
        return ToolInstallResult(kind=spec.kind, source_url=source_url, size_bytes=size, handle=handle)


__all__ = [
    "ToolKind",
    "ToolSpec",
    "ToolHandle",
    "ToolInstallResult",
    "ToolResolver",
    "TOOL_SPECS",
    "check_tool_availability",
]
