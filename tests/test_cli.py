"""
Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import base64
import dataclasses
import io
import json
import sys

import pytest

from rustora import cli
from rustora.core import JobKind, ItemStatus

FAKE_DNF_OK = """
    import sys
    for name in sys.argv[4:]:
        print(f"Installing: {name}-1.0-1.fc40.x86_64", flush=True)
        print(f"Installed: {name}-1.0-1.fc40.x86_64", flush=True)
    print("Complete!")
"""


def _job(argv, settings=None):
    return cli.build_job(cli.build_parser().parse_args(argv), settings)


def test_encode_decode_round_trip() -> None:
    value = ["vim", "with space", "ünïcode", "semi;colon"]
    encoded = cli.encode_arg(value)

    assert " " not in encoded
    assert cli.decode_arg(encoded) == value


def test_decode_accepts_standard_alphabet_without_padding() -> None:
    raw = json.dumps({"codename": "a?>b"}).encode()
    standard = base64.b64encode(raw).decode().rstrip("=")

    assert cli.decode_arg(standard) == {"codename": "a?>b"}


def test_decode_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        cli.decode_arg("!!!not base64!!!")
    with pytest.raises(ValueError):
        cli.decode_arg(base64.b64encode(b"not json").decode())


def test_dialog_argv_relaunches_module() -> None:
    assert cli.dialog_argv("install-dialog", "vim") == [sys.executable, "-m", "rustora", "install-dialog", "vim"]


def test_install_dialog_merges_plain_and_encoded_names(settings) -> None:
    job = _job(["install-dialog", "vim", "--packages-b64", cli.encode_arg(["git"])], settings)

    assert job.kind is JobKind.INSTALL
    assert job.items == ["vim", "git"]
    assert job.target == "vim git"
    session = job.new_session()
    assert session.items == ["vim", "git"]
    assert session.title == "Install Packages"


def test_install_dialog_needs_packages(settings, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        _job(["install-dialog"], settings)
    assert excinfo.value.code == 2
    assert "at least one package" in capsys.readouterr().err


def test_update_dialog_without_packages_means_all(settings) -> None:
    job = _job(["update-dialog"], settings)

    assert job.kind is JobKind.UPDATE
    assert job.items == []
    assert job.target == "all"


def test_bad_encoded_argument_exits_2(settings) -> None:
    with pytest.raises(SystemExit) as excinfo:
        _job(["update-dialog", "%%%"], settings)
    assert excinfo.value.code == 2


def test_rpm_dialog_item_is_package_name(settings) -> None:
    job = _job(["rpm-dialog", "/home/me/Downloads/google-chrome-stable-126.0-1.x86_64.rpm"], settings)

    assert job.items == ["google-chrome-stable"]


def test_rpm_dialog_rejects_other_files(settings) -> None:
    with pytest.raises(SystemExit) as excinfo:
        _job(["rpm-dialog", "notes.txt"], settings)
    assert excinfo.value.code == 2


def test_maintenance_dialog(settings) -> None:
    job = _job(["maintenance-dialog", "clean-package-cache"], settings)

    assert job.kind is JobKind.MAINTENANCE
    assert job.title == "Clean Package Cache"
    assert job.items == []


def test_maintenance_dialog_rejects_unknown_task() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.build_parser().parse_args(["maintenance-dialog", "defrag"])
    assert excinfo.value.code == 2


def test_proton_dialog_requires_http_url(settings) -> None:
    with pytest.raises(SystemExit):
        _job(["proton-install-dialog", "GE-Proton", "GE-Proton9-1", "file:///etc/passwd"], settings)

    job = _job(["proton-install-dialog", "GE-Proton", "GE-Proton9-1",
                "https://example.invalid/GE-Proton9-1.tar.gz"], settings)
    assert job.kind is JobKind.RUNTIME_ACQUIRE
    assert job.items == ["GE-Proton9-1"]
    assert job.title == "Install GE-Proton GE-Proton9-1"


@pytest.mark.parametrize("build", ["..", "../../etc", "."])
def test_proton_dialog_rejects_path_like_build(build, settings, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        _job(["proton-install-dialog", "GE-Proton", build, "https://example.invalid/x.tar.gz"], settings)
    assert excinfo.value.code == 2
    assert "Invalid build name" in capsys.readouterr().err


def test_device_dialog_decodes_profile_and_device(settings) -> None:
    profile = {"codename": "nvidia-open", "i18n_desc": "NVIDIA Open Kernel Modules",
               "install_script": "dnf install -y akmod-nvidia", "remove_script": "Option::is_none"}
    device = {"vendor_id": "10de", "device_id": "2786", "not_a_field": True}
    job = _job(["device-install-dialog", "--profile-b64", cli.encode_arg(profile),
                "--device-b64", cli.encode_arg(device)], settings)

    assert job.kind is JobKind.DRIVER_INSTALL
    assert job.title == "Install NVIDIA Open Kernel Modules"
    assert job.items == ["nvidia-open"]


def test_device_dialog_needs_codename(settings) -> None:
    with pytest.raises(SystemExit):
        _job(["device-remove-dialog", "--profile-b64", cli.encode_arg({"i18n_desc": "x"}),
              "--device-b64", cli.encode_arg({})], settings)


def test_headless_install(make_tool, settings) -> None:
    settings = dataclasses.replace(settings, package_tool=make_tool("dnf", FAKE_DNF_OK))
    job = _job(["install-dialog", "vim", "git"], settings)
    out = io.StringIO()

    assert cli.run_headless(job, out) == 0

    printed = out.getvalue().splitlines()
    assert printed[-1] == "SUCCESS: Operation completed successfully"
    assert "Installed: vim-1.0-1.fc40.x86_64" in printed
    assert "Installed: git-1.0-1.fc40.x86_64" in printed


def test_headless_failure_prints_summary_once(make_tool, settings) -> None:
    dnf = make_tool("dnf", """
        import sys
        print("Error: Unable to find a match: nopkg", file=sys.stderr)
        sys.exit(1)
    """)
    settings = dataclasses.replace(settings, package_tool=dnf)
    out = io.StringIO()

    assert cli.run_headless(_job(["install-dialog", "nopkg"], settings), out) == 0

    text = out.getvalue()
    assert "[stderr] Error: Unable to find a match: nopkg" in text
    assert text.count("Operation failed (exit code: 1)") == 2
    assert text.splitlines()[-1] == "FAILED: Operation failed (exit code: 1)"


def test_headless_job_marks_items(make_tool, settings) -> None:
    settings = dataclasses.replace(settings, package_tool=make_tool("dnf", FAKE_DNF_OK))
    job = _job(["install-dialog", "vim"], settings)
    session = job.new_session()

    job.runner(session)

    assert session.item_status("vim") is ItemStatus.SUCCEEDED


def test_main_without_command_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "install-dialog" in capsys.readouterr().out


def test_log_file_option(tmp_path, capsys) -> None:
    path = tmp_path / "dialog.log"

    assert cli.main(["--log-file", str(path)]) == 0
    assert path.exists()
    assert "--log-file" in capsys.readouterr().out


def test_version_flag(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--version"])
    assert excinfo.value.code == 0
    assert "Rustora v" in capsys.readouterr().out
