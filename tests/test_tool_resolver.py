import io
import os
import sys
import zipfile
import httpx
import pytest

from vendorflash.core.errors import ToolInstallFailed, ToolNotInstalled
from vendorflash.utils.tools import ToolKind, ToolResolver, ToolSpec, check_tool_availability

PRIMARY = "https://primary.example/edl-master.zip"
MIRROR_1 = "https://mirror1.example/edl-master.zip"
MIRROR_2 = "https://mirror2.example/edl-master.zip"


def make_zip_bytes(member="edl-master/edl.py", padding=4096):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_STORED) as zf:
        zf.writestr(member, "print('edl')\n")
        zf.writestr("edl-master/padding.bin", os.urandom(padding))
    return buf.getvalue()


def make_specs(**overrides):
    edl = dict(
        kind=ToolKind.EDL,
        name="Test EDL",
        executable_names=("edl.py",),
        install_dir="edl",
        url=PRIMARY,
        fallback_urls=(MIRROR_1, MIRROR_2),
        requires_interpreter=True,
    )
    edl.update(overrides)
    return {ToolKind.EDL: ToolSpec(**edl)}


def make_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)


def make_resolver(tmp_path, handler=None, **spec_overrides):
    def refuse(request):
        raise AssertionError(f"unexpected request to {request.url}")

    return ToolResolver(
        tools_dir=tmp_path / "tools",
        client=make_client(handler or refuse),
        specs=make_specs(**spec_overrides),
        interpreter_candidates=[sys.executable],
        min_download_bytes=1000,
    )


def test_install_falls_back_past_404_and_error_page(tmp_path):
    archive = make_zip_bytes()
    assert len(archive) >= 1000
    requested = []

    def handler(request):
        requested.append(str(request.url))
        if request.url.host == "primary.example":
            return httpx.Response(404, text="Not Found")
        if request.url.host == "mirror1.example":
            return httpx.Response(200, content=b"0123456789")
        return httpx.Response(200, content=archive)

    resolver = make_resolver(tmp_path, handler)
    result = resolver.install(ToolKind.EDL)

    assert requested == [PRIMARY, MIRROR_1, MIRROR_2]
    assert result.source_url == MIRROR_2
    assert result.size_bytes == len(archive)
    assert result.handle.path.endswith(os.path.join("edl-master", "edl.py"))
    assert result.handle.path.startswith(str(tmp_path / "tools" / "edl"))
    assert result.handle.interpreter == sys.executable
    assert result.handle.working_dir == os.path.dirname(result.handle.path)
    # no download leftovers
    assert not list((tmp_path / "tools").glob("*.download"))


def test_install_is_idempotent(tmp_path):
    archive = make_zip_bytes()
    resolver = make_resolver(tmp_path, lambda request: httpx.Response(200, content=archive))
    installed = resolver.ensure(ToolKind.EDL)

    # A fresh resolver must find the tool without touching the network
    second = make_resolver(tmp_path)
    handle = second.ensure(ToolKind.EDL)
    assert handle.path == installed.path


def test_install_fails_when_every_source_fails(tmp_path):
    def handler(request):
        if request.url.host == "mirror1.example":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(503, text="Service Unavailable")

    resolver = make_resolver(tmp_path, handler)
    with pytest.raises(ToolInstallFailed):
        resolver.ensure(ToolKind.EDL)
    assert resolver.resolve(ToolKind.EDL) is None


def test_install_fails_when_archive_lacks_tool(tmp_path):
    archive = make_zip_bytes(member="other-master/readme.md")
    resolver = make_resolver(tmp_path, lambda request: httpx.Response(200, content=archive))
    with pytest.raises(ToolInstallFailed):
        resolver.install(ToolKind.EDL)


def test_install_single_executable(tmp_path):
    binary = b"\x7fELF" + os.urandom(2048)
    resolver = make_resolver(
        tmp_path,
        lambda request: httpx.Response(200, content=binary),
        executable_names=("heimdall-test",),
        install_dir="heimdall",
        url="https://downloads.example/heimdall-test",
        fallback_urls=(),
        requires_interpreter=False,
        single_executable=True,
    )
    result = resolver.install(ToolKind.EDL)

    path = tmp_path / "tools" / "heimdall" / "heimdall-test"
    assert result.handle.path == str(path)
    assert result.handle.interpreter is None
    assert path.read_bytes() == binary
    if os.name != "nt":
        assert os.access(path, os.X_OK)


def test_resolve_returns_none_when_missing(tmp_path):
    resolver = make_resolver(tmp_path, executable_names=("vendorflash-missing-tool.py",))
    assert resolver.resolve(ToolKind.EDL) is None


def test_resolve_finds_nested_script(tmp_path):
    script = tmp_path / "tools" / "edl" / "edl-3.62" / "edl.py"
    script.parent.mkdir(parents=True)
    script.write_text("print('edl')\n")

    handle = make_resolver(tmp_path).resolve(ToolKind.EDL)
    assert handle.path == str(script)
    assert handle.command == [sys.executable, str(script)]


def test_script_without_runtime_is_not_installed(tmp_path):
    script = tmp_path / "tools" / "edl" / "edl.py"
    script.parent.mkdir(parents=True)
    script.write_text("print('edl')\n")

    resolver = ToolResolver(
        tools_dir=tmp_path / "tools",
        client=make_client(lambda request: httpx.Response(404)),
        specs=make_specs(),
        interpreter_candidates=[str(tmp_path / "no-python")],
    )
    with pytest.raises(ToolNotInstalled):
        resolver.resolve(ToolKind.EDL)


def test_runtime_lookup_skips_broken_candidates(tmp_path):
    resolver = ToolResolver(
        tools_dir=tmp_path / "tools",
        specs=make_specs(),
        interpreter_candidates=[str(tmp_path / "no-python"), "vendorflash-no-such-python", sys.executable],
    )
    assert resolver.find_interpreter() == sys.executable


def test_check_tool_availability():
    assert check_tool_availability(sys.executable) is True
    assert check_tool_availability("vendorflash-no-such-binary") is False
    assert check_tool_availability("") is False


def test_status_reports_install_state(tmp_path):
    resolver = make_resolver(tmp_path, executable_names=("vendorflash-missing-tool.py",))
    status = resolver.status()
    assert status == [{
        "kind": "edl",
        "name": "Test EDL",
        "installed": False,
        "path": None,
        "interpreter": None,
        "download_url": PRIMARY,
        "error": None,
    }]
