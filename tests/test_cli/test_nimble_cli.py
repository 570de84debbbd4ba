"""Tests for the nimble command line and game launch helpers."""

from __future__ import annotations

import sys
from pathlib import Path, PurePosixPath

import pytest

from cli import nimble_cli
from cli.nimble_cli import (
    EXIT_ABORTED,
    EXIT_OK,
    EXIT_PARTIAL,
    exit_code_for,
    main,
    print_report,
)
from nimble.filesystem.manifest_codec import load_cached_manifest
from nimble.filesystem.mod_cache import load_mod_cache
from nimble.filesystem.paths import MOD_CACHE_NAME
from nimble.services.launch_service import (
    LaunchError,
    build_launch_args,
    game_store_path,
    steam_launch_url,
    to_proton_path,
)
from nimble.services.sync_service import FileFailure, ModReport, SyncReport
from nimble.transport.http_transport import HttpTransport
from tests.helpers import (
    FakeTransport,
    mock_http_client,
    publish_mod,
    publish_repository,
    write_files,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="Proton paths are POSIX-only")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("NIMBLE_BLOCK_SIZE", "NIMBLE_RETRY_BASE_DELAY", "NIMBLE_RETRY_MAX_DELAY"):
        monkeypatch.delenv(name, raising=False)


class TestLaunchArgs:
    def test_mods_sorted_case_insensitively_with_trailing_separator(self) -> None:
        assert (
            build_launch_args("c:/arma", ["@b", "@A"])
            == "-noLauncher -mod=c:/arma/@A;c:/arma/@b;"
        )

    def test_windows_base_uses_backslashes(self) -> None:
        assert build_launch_args("D:\\Mods\\", ["@ace"]) == "-noLauncher -mod=D:\\Mods\\@ace;"

    def test_no_mods(self) -> None:
        assert build_launch_args("c:/arma", []) == "-noLauncher -mod="

    def test_steam_url_encodes_every_non_alphanumeric_byte(self) -> None:
        assert (
            steam_launch_url("-noLauncher -mod=c:/x/@a_1;")
            == "steam://run/107410//%2DnoLauncher%20%2Dmod%3Dc%3A%2Fx%2F%40a%5F1%3B/"
        )

    def test_steam_url_encodes_utf8(self) -> None:
        assert steam_launch_url("é") == "steam://run/107410//%C3%A9/"


class TestProtonPath:
    def test_path_inside_prefix_maps_to_c_drive(self) -> None:
        host = PurePosixPath(
            "/home/u/.steam/steamapps/compatdata/107410/pfx/drive_c/banana_repo"
        )
        assert str(to_proton_path(host)) == "c:/banana_repo"

    def test_nearest_drive_c_wins(self) -> None:
        host = PurePosixPath("/a/drive_c/b/drive_c/mods")
        assert str(to_proton_path(host)) == "c:/mods"

    def test_path_outside_prefix_is_error(self) -> None:
        with pytest.raises(LaunchError, match="drive_c"):
            to_proton_path(PurePosixPath("/home/u/mods"))

    def test_windows_store_path_is_used_as_is(self) -> None:
        assert game_store_path(Path("arma"), windows=True) == str(Path("arma"))

    @posix_only
    def test_posix_store_path_goes_through_proton(self) -> None:
        assert game_store_path(Path("/x/pfx/drive_c/arma"), windows=False) == "c:/arma"


class TestExitCodes:
    def test_clean_pass(self) -> None:
        report = SyncReport("repo", mods=[ModReport("@a", added=1)])
        assert exit_code_for(report) == EXIT_OK

    def test_file_failures_are_partial(self) -> None:
        failure = FileFailure("a.pbo", "digest mismatch", "DigestMismatchError")
        report = SyncReport("repo", mods=[ModReport("@a", failures=[failure])])
        assert exit_code_for(report) == EXIT_PARTIAL

    def test_mod_error_is_partial(self) -> None:
        report = SyncReport("repo", mods=[ModReport("@a", error="HTTP 404")])
        assert exit_code_for(report) == EXIT_PARTIAL

    def test_cancelled_pass_is_aborted(self) -> None:
        assert exit_code_for(SyncReport("repo", cancelled=True)) == EXIT_ABORTED


class TestPrintReport:
    def test_lists_counts_and_failures(self, capsys: pytest.CaptureFixture[str]) -> None:
        failure = FileFailure("a.pbo", "bad digest", "DigestMismatchError")
        report = SyncReport(
            "Test Repo",
            mods=[
                ModReport("@a", added=2, unchanged=3, failures=[failure]),
                ModReport("@b", up_to_date=True),
                ModReport("@c", error="HTTP 404"),
            ],
        )

        print_report(report)

        out = capsys.readouterr().out
        assert "Repository Test Repo" in out
        assert "@a: 2 added, 0 updated, 0 deleted, 3 unchanged, 1 failed" in out
        assert "! a.pbo: DigestMismatchError: bad digest" in out
        assert "@b: up to date" in out
        assert "@c: FAILED (HTTP 404)" in out


class TestMain:
    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == EXIT_ABORTED
        assert "usage:" in capsys.readouterr().out

    def test_sync_rejects_insecure_url(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code = main(["sync", "-r", "http://example.com", "-p", str(tmp_path)])
        assert code == EXIT_ABORTED
        assert "HTTPS is required" in capsys.readouterr().out

    def test_sync_rejects_zero_concurrency(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code = main(["sync", "-r", "https://example.com", "-p", str(tmp_path), "-c", "0"])
        assert code == EXIT_ABORTED
        assert "--concurrency" in capsys.readouterr().out

    def test_sync_over_http(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("NIMBLE_BLOCK_SIZE", "16")
        monkeypatch.setenv("NIMBLE_RETRY_BASE_DELAY", "0")
        monkeypatch.setenv("NIMBLE_RETRY_MAX_DELAY", "0")
        repository = FakeTransport()
        remote = publish_mod(repository, "@mod", {"addons/a.bin": b"x" * 40})
        publish_repository(repository, [remote])
        store = tmp_path / "store"
        store.mkdir()

        def from_settings(
            cls: type[HttpTransport], base_url: str, settings: object
        ) -> HttpTransport:
            return cls(base_url, client=mock_http_client(repository.resources))

        monkeypatch.setattr(nimble_cli.HttpTransport, "from_settings", classmethod(from_settings))

        code = main(["-q", "sync", "-r", "https://repo.example", "-p", str(store)])

        assert code == EXIT_OK
        assert "@mod: 1 added" in capsys.readouterr().out
        assert (store / "@mod/addons/a.bin").read_bytes() == b"x" * 40
        assert load_mod_cache(store).contains(remote.checksum, "@mod")

    def test_sync_missing_store_is_aborted(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        repository = FakeTransport()
        publish_repository(repository, [])

        def from_settings(
            cls: type[HttpTransport], base_url: str, settings: object
        ) -> HttpTransport:
            return cls(base_url, client=mock_http_client(repository.resources))

        monkeypatch.setattr(nimble_cli.HttpTransport, "from_settings", classmethod(from_settings))

        code = main(["sync", "-r", "https://repo.example", "-p", str(tmp_path / "absent")])

        assert code == EXIT_ABORTED
        assert "Error: Mod store does not exist" in capsys.readouterr().out

    def test_gen_srf(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        store = tmp_path / "store"
        write_files(store / "@a", {"a.pbo": b"a"})
        write_files(store / "@b", {"b.pbo": b"b"})

        assert main(["gen-srf", "-p", str(store)]) == EXIT_OK

        assert "Generated manifests for 2 mod(s)" in capsys.readouterr().out
        assert load_cached_manifest(store / "@a") is not None
        assert load_mod_cache(store).names() == ["@a", "@b"]

    def test_gen_srf_missing_store(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["gen-srf", "-p", str(tmp_path / "absent")]) == EXIT_ABORTED
        assert "Error:" in capsys.readouterr().out

    @posix_only
    def test_launch_prints_url_and_generates_missing_cache(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        store = tmp_path / "pfx" / "drive_c" / "arma"
        write_files(store / "@b", {"b.pbo": b"b"})
        write_files(store / "@a", {"a.pbo": b"a"})

        assert main(["launch", "-p", str(store), "--print-url"]) == EXIT_OK

        expected = steam_launch_url(build_launch_args("c:/arma", ["@a", "@b"]))
        assert capsys.readouterr().out.strip() == expected
        assert (store / MOD_CACHE_NAME).exists()

    @posix_only
    def test_launch_outside_proton_prefix_is_error(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        store = tmp_path / "arma"
        write_files(store / "@a", {"a.pbo": b"a"})

        assert main(["launch", "-p", str(store), "--print-url"]) == EXIT_ABORTED
        assert "drive_c" in capsys.readouterr().out
