"""Tests for PackagingConfig and TOML configuration loading."""

from pathlib import Path

import pytest

from macpackager import (
    ConfigurationError,
    PackagingConfig,
    get_config_section,
    load_config,
    normalize_version,
)


class TestNormalizeVersion:
    """Tests for normalize_version()."""

    def test_none(self):
        assert normalize_version(None) is None

    def test_string_unchanged(self):
        assert normalize_version("1.1.0") == "1.1.0"

    def test_integer(self):
        assert normalize_version(12) == "12"
        assert normalize_version(1234) == "1234"

    def test_bool_rejected(self):
        with pytest.raises(ConfigurationError, match="string or an integer"):
            normalize_version(True)

    def test_float_rejected(self):
        with pytest.raises(ConfigurationError, match="app_version"):
            normalize_version(1.5, "app_version")


class TestPackagingConfig:
    """Tests for PackagingConfig construction."""

    def test_defaults(self):
        config = PackagingConfig(app_name="Test")
        assert config.app_version is None
        assert config.build_version is None
        assert config.sign is False
        assert config.arch == ("x64",)
        assert config.platform == "darwin"
        assert config.runtime_name == "Electron"
        assert config.out == Path(".")
        assert config.icon is None

    def test_empty_name_rejected(self):
        with pytest.raises(ConfigurationError, match="non-empty"):
            PackagingConfig(app_name="")

    def test_blank_name_rejected(self):
        with pytest.raises(ConfigurationError):
            PackagingConfig(app_name="   ")

    def test_name_with_slash_rejected(self):
        with pytest.raises(ConfigurationError, match="file name"):
            PackagingConfig(app_name="a/b")

    def test_build_version_defaults_to_app_version(self):
        config = PackagingConfig(app_name="Test", app_version="1.1.0")
        assert config.build_version == "1.1.0"

    def test_integer_versions_normalized(self):
        config = PackagingConfig(
            app_name="Test", app_version=12, build_version=1234
        )
        assert config.app_version == "12"
        assert config.build_version == "1234"

    def test_invalid_platform(self):
        with pytest.raises(ConfigurationError, match="platform"):
            PackagingConfig(app_name="Test", platform="linux")

    def test_single_arch_string(self):
        config = PackagingConfig(app_name="Test", arch="arm64")
        assert config.arch == ("arm64",)

    def test_empty_arch_rejected(self):
        with pytest.raises(ConfigurationError, match="arch"):
            PackagingConfig(app_name="Test", arch=())

    def test_paths_converted(self, tmp_path):
        config = PackagingConfig(
            app_name="Test", icon=str(tmp_path / "icon"), out=str(tmp_path)
        )
        assert config.icon == tmp_path / "icon"
        assert config.out == tmp_path

    def test_empty_icon_is_none(self):
        assert PackagingConfig(app_name="Test", icon="").icon is None

    def test_missing_entitlements(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            PackagingConfig(
                app_name="Test", entitlements=tmp_path / "missing.plist"
            )

    def test_sign_identity_from_env(self, monkeypatch):
        monkeypatch.setenv("DEV_ID", "Jane Doe")
        assert PackagingConfig(app_name="Test").sign_identity == "Jane Doe"

    def test_sign_identity_param_overrides_env(self, monkeypatch):
        monkeypatch.setenv("DEV_ID", "Jane Doe")
        config = PackagingConfig(app_name="Test", sign_identity="John Doe")
        assert config.sign_identity == "John Doe"

    @pytest.mark.parametrize("sign", ["no", "false", 0, None])
    def test_sign_must_be_bool(self, sign):
        with pytest.raises(ConfigurationError, match="sign must be"):
            PackagingConfig(app_name="Test", sign=sign)

    def test_frozen(self):
        config = PackagingConfig(app_name="Test")
        with pytest.raises(AttributeError):
            config.app_name = "Other"  # type: ignore[misc]

    def test_resolved_app_bundle_id_default(self):
        config = PackagingConfig(app_name="My App")
        assert config.resolved_app_bundle_id == "com.electron.myapp"

    def test_resolved_app_bundle_id_filtered(self):
        config = PackagingConfig(
            app_name="Test", app_bundle_id="com.example.my app!"
        )
        assert config.resolved_app_bundle_id == "com.example.myapp"

    def test_output_paths(self, tmp_path):
        config = PackagingConfig(app_name="Test", out=tmp_path, platform="mas")
        assert config.output_root("arm64") == tmp_path / "Test-mas-arm64"
        assert (
            config.bundle_path("arm64")
            == tmp_path / "Test-mas-arm64" / "Test.app"
        )


class TestProtocols:
    """Tests for URL protocol normalization."""

    def test_pairs(self):
        config = PackagingConfig(
            app_name="Test", protocols=[("Test URL", ["test", "test2"])]
        )
        assert config.protocols == (("Test URL", ("test", "test2")),)

    def test_tables(self):
        config = PackagingConfig(
            app_name="Test",
            protocols=[{"name": "Test URL", "schemes": "test"}],
        )
        assert config.protocols == (("Test URL", ("test",)),)

    def test_missing_schemes(self):
        with pytest.raises(ConfigurationError, match="scheme"):
            PackagingConfig(app_name="Test", protocols=[{"name": "x"}])

    def test_malformed(self):
        with pytest.raises(ConfigurationError, match="Invalid protocol"):
            PackagingConfig(app_name="Test", protocols=[42])


class TestFromMapping:
    """Tests for PackagingConfig.from_mapping()."""

    def test_overrides_win(self):
        base = {"app_name": "Base", "app_version": "1.0"}
        config = PackagingConfig.from_mapping(base, app_version="2.0")
        assert config.app_name == "Base"
        assert config.app_version == "2.0"

    def test_none_override_keeps_base(self):
        base = {"app_name": "Base", "app_bundle_id": "com.example.base"}
        config = PackagingConfig.from_mapping(base, app_bundle_id=None)
        assert config.app_bundle_id == "com.example.base"

    def test_kebab_case_keys(self):
        base = {"name": "Test", "app-bundle-id": "com.example.test"}
        config = PackagingConfig.from_mapping(base)
        assert config.app_name == "Test"
        assert config.app_bundle_id == "com.example.test"

    def test_base_not_mutated(self):
        base = {"app_name": "Base"}
        PackagingConfig.from_mapping(base, app_version="3.0")
        assert base == {"app_name": "Base"}

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError, match="Unknown option"):
            PackagingConfig.from_mapping({"app_name": "Test", "bogus": 1})

    def test_requires_name(self):
        with pytest.raises(ConfigurationError, match="required"):
            PackagingConfig.from_mapping({"app_version": "1.0"})


class TestLoadConfig:
    """Tests for load_config() and get_config_section()."""

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "release.toml"
        path.write_text('[package]\napp_name = "Test"\napp_version = 12\n')
        config = load_config(path)
        assert config == {"package": {"app_name": "Test", "app_version": 12}}

    def test_explicit_path_missing(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "missing.toml")

    def test_search_cwd(self, tmp_path, monkeypatch):
        (tmp_path / "macpackager.toml").write_text(
            '[package]\napp_name = "Found"\n'
        )
        monkeypatch.chdir(tmp_path)
        assert get_config_section(load_config()) == {"app_name": "Found"}

    def test_hidden_file_preferred(self, tmp_path, monkeypatch):
        (tmp_path / "macpackager.toml").write_text(
            '[package]\napp_name = "Plain"\n'
        )
        (tmp_path / ".macpackager.toml").write_text(
            '[package]\napp_name = "Hidden"\n'
        )
        monkeypatch.chdir(tmp_path)
        assert get_config_section(load_config()) == {"app_name": "Hidden"}

    def test_no_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert load_config() == {}

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[package\n")
        with pytest.raises(ConfigurationError, match="Invalid config"):
            load_config(path)

    def test_section_missing(self):
        assert get_config_section({}) == {}

    def test_section_not_table(self):
        with pytest.raises(ConfigurationError, match="table"):
            get_config_section({"package": "nope"})

    def test_config_to_packaging_config(self, tmp_path):
        path = tmp_path / "release.toml"
        path.write_text(
            "[package]\n"
            'name = "Test"\n'
            "app-version = 12\n"
            "build-version = 1234\n"
            'arch = ["x64", "arm64"]\n'
            "[[package.protocols]]\n"
            'name = "Test URL"\n'
            'schemes = ["test"]\n'
        )
        config = PackagingConfig.from_mapping(
            get_config_section(load_config(path))
        )
        assert config.app_version == "12"
        assert config.build_version == "1234"
        assert config.arch == ("x64", "arm64")
        assert config.protocols == (("Test URL", ("test",)),)
