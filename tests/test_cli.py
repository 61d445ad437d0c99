"""Tests for argument parsing, configuration assembly and exit codes."""

import pytest

import build_arm_toolchain as bt


def parse(*argv):
    return bt.create_parser().parse_args(list(argv))


class TestParser:
    def test_unknown_option_exits_with_1(self, capsys):
        with pytest.raises(SystemExit) as exc:
            parse("--no-such-option")
        assert exc.value.code == 1
        assert "unrecognized arguments" in capsys.readouterr().err

    def test_missing_option_value_exits_with_1(self):
        with pytest.raises(SystemExit) as exc:
            parse("--prefix")
        assert exc.value.code == 1

    def test_version_exits_with_0(self, capsys):
        with pytest.raises(SystemExit) as exc:
            parse("--version")
        assert exc.value.code == 0
        assert bt.__version__ in capsys.readouterr().out

    def test_package_version_with_and_without_value(self):
        args = parse("--binutils-version", "2.38", "--gcc-version")
        assert args.binutils_version == "2.38"
        assert args.gcc_version == bt.LATEST
        assert args.newlib_version is None

    def test_unsupported_target_is_rejected_up_front(self, capsys):
        with pytest.raises(SystemExit) as exc:
            parse("--target", "riscv64-unknown-elf")
        assert exc.value.code == 1
        assert "invalid choice" in capsys.readouterr().err


class TestBuildConfig:
    def test_defaults(self, tmp_path):
        config = bt.build_config(parse("--root", str(tmp_path)))

        assert config.target == "arm-none-eabi"
        assert config.root == tmp_path.resolve()
        assert config.install_prefix == tmp_path.resolve() / "cross-tools"
        assert config.versions == {}
        assert config.jobs >= 1
        assert config.log_history == 3
        assert config.missing_configure is bt.MissingConfigurePolicy.FAIL
        assert config.trust_cached_archives
        assert not config.with_gdb

    def test_config_is_immutable(self, tmp_path):
        config = bt.build_config(parse("--root", str(tmp_path)))
        with pytest.raises(AttributeError):
            config.with_gdb = True

    def test_command_line_overrides_config_file(self, tmp_path):
        config_file = tmp_path / "toolchain.yaml"
        config_file.write_text(
            "versions:\n"
            "  binutils: '2.38'\n"
            "  gcc: 11.3.0\n"
            "jobs: 4\n"
            "with_gdb: true\n"
            "cflags: -pipe -g\n"
            "configure_flags:\n"
            "  gcc: [--enable-lto]\n"
            "missing_configure: warn\n"
            "log_history: 5\n"
        )

        config = bt.build_config(parse(
            "--config", str(config_file), "--root", str(tmp_path),
            "--gcc-version", "12.1.0", "--jobs", "8", "--cflag=-O3",
            "--configure-flag=--quiet", "--configure-flag", "newlib:--enable-newlib-io-float",
            "--strict-cache",
        ))

        assert config.versions == {"binutils": "2.38", "gcc": "12.1.0"}
        assert config.jobs == 8
        assert config.with_gdb
        assert config.cflags == ("-pipe", "-g", "-O3")
        assert config.configure_flags == {
            "gcc": ("--enable-lto",),
            "all": ("--quiet",),
            "newlib": ("--enable-newlib-io-float",),
        }
        assert config.missing_configure is bt.MissingConfigurePolicy.WARN
        assert config.log_history == 5
        assert not config.trust_cached_archives

    def test_unknown_config_key(self, tmp_path):
        config_file = tmp_path / "toolchain.yaml"
        config_file.write_text("compiler: clang\n")
        with pytest.raises(bt.UsageError, match="compiler"):
            bt.build_config(parse("--config", str(config_file)))

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "toolchain.yaml"
        config_file.write_text("versions: [unclosed\n")
        with pytest.raises(bt.UsageError, match="Invalid config file"):
            bt.build_config(parse("--config", str(config_file)))

    def test_unknown_package_version(self, tmp_path):
        config_file = tmp_path / "toolchain.yaml"
        config_file.write_text("versions:\n  llvm: '17'\n")
        with pytest.raises(bt.UsageError, match="llvm"):
            bt.build_config(parse("--config", str(config_file)))

    def test_bad_missing_configure_policy(self, tmp_path):
        config_file = tmp_path / "toolchain.yaml"
        config_file.write_text("missing_configure: ignore\n")
        with pytest.raises(bt.UsageError, match="missing_configure"):
            bt.build_config(parse("--config", str(config_file)))

    def test_allow_missing_configure_flag(self, tmp_path):
        config = bt.build_config(parse("--root", str(tmp_path), "--allow-missing-configure"))
        assert config.missing_configure is bt.MissingConfigurePolicy.WARN

    def test_negative_jobs(self, tmp_path):
        with pytest.raises(bt.UsageError, match="jobs"):
            bt.build_config(parse("--root", str(tmp_path), "--jobs", "-2"))

    @pytest.mark.parametrize("key", ["jobs", "log_history"])
    def test_non_integer_setting(self, tmp_path, key):
        config_file = tmp_path / "toolchain.yaml"
        config_file.write_text(f"{key}: many\n")
        with pytest.raises(bt.UsageError, match=f"{key} must be an integer"):
            bt.build_config(parse("--config", str(config_file)))

    def test_unsupported_target_in_config_file(self, tmp_path):
        config_file = tmp_path / "toolchain.yaml"
        config_file.write_text("target: riscv64-unknown-elf\n")
        with pytest.raises(bt.UsageError, match="Unsupported target"):
            bt.build_config(parse("--config", str(config_file)))


def test_parse_configure_flags():
    flags = bt.parse_configure_flags(
        ["--quiet", "gcc-bootstrap:--disable-lto", "unknown:--keep"],
        {"binutils": "--enable-gold"})
    assert flags == {
        "binutils": ("--enable-gold",),
        "all": ("--quiet", "unknown:--keep"),
        "gcc-bootstrap": ("--disable-lto",),
    }


class TestMain:
    def test_dump_latest_prints_table_and_exits(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(bt.VersionResolver, "resolve",
                            lambda self, url, prefix: "99.1" if prefix == "gcc-" else "")

        assert bt.main(["--dump-latest", "--root", str(tmp_path)]) == 0

        out = capsys.readouterr().out
        assert "99.1" in out
        assert "binutils" in out
        assert not (tmp_path / "build").exists()

    def test_usage_error_exits_with_1(self, tmp_path, capsys):
        config_file = tmp_path / "toolchain.yaml"
        config_file.write_text("- not a mapping\n")
        assert bt.main(["--config", str(config_file)]) == 1
        assert "must contain a mapping" in capsys.readouterr().err

    def test_non_integer_jobs_exits_with_1(self, tmp_path, capsys):
        config_file = tmp_path / "toolchain.yaml"
        config_file.write_text("jobs: many\n")
        assert bt.main(["--config", str(config_file), "--root", str(tmp_path)]) == 1
        err = capsys.readouterr().err
        assert "jobs must be an integer" in err
        assert "Traceback" not in err

    def test_build_failure_exits_with_1(self, tmp_path, monkeypatch, capsys):
        def fail(self):
            raise bt.BuildToolFailure("binutils configure failed with code 2")

        monkeypatch.setattr(bt.ToolchainPipeline, "run", fail)

        assert bt.main(["--root", str(tmp_path)]) == 1
        assert "binutils configure failed" in capsys.readouterr().err

    def test_unsupported_archive_exits_with_1(self, tmp_path, monkeypatch):
        def fail(self):
            raise bt.UnsupportedArchiveFormat("Unsupported archive format: x.cpio")

        monkeypatch.setattr(bt.ToolchainPipeline, "run", fail)
        assert bt.main(["--root", str(tmp_path)]) == 1

    def test_successful_build_installs_metadata(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            bt.ToolchainPipeline, "run",
            lambda self: self.package_specs(dict(bt.DEFAULT_VERSIONS)))

        assert bt.main(["--root", str(tmp_path), "--skip-validation"]) == 0
        assert (tmp_path / "cross-tools" / "VERSION.txt").exists()

    def test_validation_failure_exits_with_1(self, tmp_path, monkeypatch):
        monkeypatch.setattr(bt.ToolchainPipeline, "run", lambda self: [])
        assert bt.main(["--root", str(tmp_path)]) == 1
