"""Tests for the mounted-image customizations."""

import json

import pytest

from core.image.customizations import (
    AUTOPILOT_RELATIVE_PATH,
    START_LAYOUT_RELATIVE_DIR,
    ImageCustomizer,
    read_reg_file,
    rewrite_registry_paths,
)
from core.image.session import ImageSession
from core.selections import (
    AgentSelection, DriverSelection, FileSelection, LanguageSelection, PackageRemovalSelection,
    ProvisioningSelection, RegistrySelection, ScriptSelection,
)


@pytest.fixture
def session(tmp_path):
    mount = tmp_path / "mount"
    (mount / "Windows").mkdir(parents=True)
    return ImageSession(
        source_path=tmp_path / "install.wim",
        index=1,
        output_dir=tmp_path,
        output_name="out",
        mount_dir=mount,
        os_family="Windows 10",
        version="22H2",
        architecture="x64",
    )


@pytest.fixture
def customizer(config, dism, fetcher):
    return ImageCustomizer(config, dism, fetcher=fetcher)


class TestRegistryRewrite:
    def test_section_headers_are_rewritten(self):
        content = (
            "Windows Registry Editor Version 5.00\r\n\r\n"
            "[HKEY_CURRENT_USER\\Software\\Policies\\Microsoft\\Windows\\Explorer]\r\n"
            "\"DisableSearchBoxSuggestions\"=dword:00000001\r\n\r\n"
            "[HKEY_LOCAL_MACHINE\\SOFTWARE\\Policies\\Microsoft\\Windows\\CloudContent]\r\n"
            "[-HKEY_LOCAL_MACHINE\\SYSTEM\\CurrentControlSet\\Services\\DiagTrack]\r\n"
            "[HKU\\.DEFAULT\\Control Panel\\Keyboard]\r\n"
        )

        rewritten = rewrite_registry_paths(content)

        assert "[HKEY_LOCAL_MACHINE\\OfflineDefaultUser\\Software\\Policies" in rewritten
        assert "[HKEY_LOCAL_MACHINE\\OfflineSoftware\\Policies\\Microsoft" in rewritten
        assert "[-HKEY_LOCAL_MACHINE\\OfflineSystem\\CurrentControlSet" in rewritten
        assert "[HKEY_LOCAL_MACHINE\\OfflineDefault\\Control Panel" in rewritten

    def test_value_data_is_not_rewritten(self):
        content = "[HKCU\\Software\\App]\r\n\"Target\"=\"HKEY_CURRENT_USER\\\\Software\"\r\n"

        rewritten = rewrite_registry_paths(content)

        assert rewritten.startswith("[HKEY_LOCAL_MACHINE\\OfflineDefaultUser\\Software\\App]")
        assert "\"Target\"=\"HKEY_CURRENT_USER\\\\Software\"" in rewritten

    def test_other_hives_are_left_alone(self):
        content = "[HKEY_LOCAL_MACHINE\\HARDWARE\\DESCRIPTION]\r\n[HKEY_CURRENT_USERS_EXTRA]\r\n"

        assert rewrite_registry_paths(content) == content

    def test_read_reg_file_handles_utf16(self, tmp_path):
        path = tmp_path / "export.reg"
        path.write_bytes("\ufeffWindows Registry Editor Version 5.00\r\n".encode("utf-16-le"))

        assert read_reg_file(path).lstrip("\ufeff").startswith("Windows Registry Editor")

    def test_apply_registry_loads_imports_and_unloads(self, customizer, dism, session, tmp_path, workspace):
        reg = tmp_path / "policies.reg"
        reg.write_text("Windows Registry Editor Version 5.00\n\n[HKEY_CURRENT_USER\\Software\\X]\n", encoding="utf-8")

        success, _ = customizer.apply_registry(session, RegistrySelection(enabled=True, files=[str(reg)]))

        assert success
        commands = [c[1][:2] for c in dism.calls if c[0] == "run_command"]
        assert commands == [["reg", "load"]] * 4 + [["reg", "import"]] + [["reg", "unload"]] * 4
        unloads = [c[1][2] for c in dism.calls if c[0] == "run_command" and c[1][1] == "unload"]
        assert unloads == ["HKLM\\OfflineSystem", "HKLM\\OfflineSoftware", "HKLM\\OfflineDefault",
                           "HKLM\\OfflineDefaultUser"]
        staged = (workspace / "staging" / "registry" / "policies.reg").read_text(encoding="utf-16")
        assert "[HKEY_LOCAL_MACHINE\\OfflineDefaultUser\\Software\\X]" in staged

    def test_hives_are_unloaded_when_a_file_is_missing(self, customizer, dism, session, tmp_path):
        success, _ = customizer.apply_registry(session, RegistrySelection(enabled=True, files=[str(tmp_path / "nope.reg")]))

        assert not success
        assert [c[1][1] for c in dism.calls if c[0] == "run_command"].count("unload") == 4


class TestProvisioning:
    def _profile(self, tmp_path, data):
        path = tmp_path / "AutopilotConfigurationFile.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    def test_valid_profile_is_copied(self, customizer, session, tmp_path):
        profile = self._profile(tmp_path, {"CloudAssignedTenantId": "1234",
                                           "CloudAssignedTenantDomain": "contoso.onmicrosoft.com"})

        success, _ = customizer.add_provisioning(session, ProvisioningSelection(enabled=True, profile_path=str(profile)))

        assert success
        assert (session.mount_dir / AUTOPILOT_RELATIVE_PATH).read_text(encoding="utf-8") == profile.read_text(
            encoding="utf-8")

    def test_profile_missing_tenant_is_rejected(self, customizer, session, tmp_path):
        profile = self._profile(tmp_path, {"CloudAssignedTenantId": "1234"})

        success, message = customizer.add_provisioning(session, ProvisioningSelection(profile_path=str(profile)))

        assert not success
        assert "CloudAssignedTenantDomain" in message
        assert not (session.mount_dir / AUTOPILOT_RELATIVE_PATH).exists()

    def test_malformed_profile_is_rejected(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{", encoding="utf-8")

        valid, _ = ImageCustomizer.validate_autopilot_profile(path)

        assert not valid


class TestStartLayout:
    def test_windows10_xml_layout(self, customizer, session, tmp_path):
        layout = tmp_path / "layout.xml"
        layout.write_text("<LayoutModificationTemplate/>", encoding="utf-8")

        success, _ = customizer.apply_start_layout(session, FileSelection(enabled=True, path=str(layout)))

        assert success
        assert (session.mount_dir / START_LAYOUT_RELATIVE_DIR / "LayoutModification.xml").exists()

    def test_windows11_rejects_xml_layout(self, customizer, session, tmp_path):
        session.os_family = "Windows 11"
        layout = tmp_path / "layout.xml"
        layout.write_text("<LayoutModificationTemplate/>", encoding="utf-8")

        success, message = customizer.apply_start_layout(session, FileSelection(enabled=True, path=str(layout)))

        assert not success
        assert ".json" in message

    def test_windows11_json_layout(self, customizer, session, tmp_path):
        session.os_family = "Windows 11"
        layout = tmp_path / "LayoutModification.json"
        layout.write_text("{}", encoding="utf-8")

        success, _ = customizer.apply_start_layout(session, FileSelection(enabled=True, path=str(layout)))

        assert success
        assert (session.mount_dir / START_LAYOUT_RELATIVE_DIR / "LayoutModification.json").exists()


class TestPackages:
    def test_remove_packages_matches_name_and_prefix(self, customizer, dism, session):
        dism.provisioned = [
            {"display_name": "Microsoft.BingWeather",
             "package_name": "Microsoft.BingWeather_4.53.51922.0_neutral_~_8wekyb3d8bbwe"},
            {"display_name": "Microsoft.XboxApp",
             "package_name": "Microsoft.XboxApp_48.49.31001.0_neutral_~_8wekyb3d8bbwe"},
            {"display_name": "Microsoft.WindowsCalculator",
             "package_name": "Microsoft.WindowsCalculator_2020.1906.55.0_neutral_~_8wekyb3d8bbwe"},
        ]
        selection = PackageRemovalSelection(enabled=True, packages=[
            "Microsoft.BingWeather", "Microsoft.XboxApp", "Microsoft.ZuneMusic",
        ])

        success, _ = customizer.remove_packages(session, selection)

        assert success
        removed = [c[2] for c in dism.calls if c[0] == "remove_provisioned_appx"]
        assert removed == [
            "Microsoft.BingWeather_4.53.51922.0_neutral_~_8wekyb3d8bbwe",
            "Microsoft.XboxApp_48.49.31001.0_neutral_~_8wekyb3d8bbwe",
        ]

    def test_language_resources(self, customizer, dism, session, workspace):
        base = workspace / "imports" / "lang" / "Windows 10" / "22H2"
        (base / "LP").mkdir(parents=True)
        (base / "LP" / "Microsoft-Windows-Client-Language-Pack_x64_de-de.cab").write_bytes(b"x")
        (base / "LXP" / "de-DE").mkdir(parents=True)
        (base / "LXP" / "de-DE" / "LanguageExperiencePack.de-DE.Neutral.appx").write_bytes(b"x")
        (base / "LXP" / "de-DE" / "License.xml").write_text("<License/>")
        selection = LanguageSelection(
            enabled=True,
            language_packs=["Microsoft-Windows-Client-Language-Pack_x64_de-de.cab"],
            local_experience_packs=["de-DE"],
            features_on_demand=["Language.Basic~~~de-DE~0.0.1.0"],
        )

        success, _ = customizer.add_language_resources(session, selection)

        assert success
        assert dism.call_names() == ["add_package", "add_provisioned_appx", "add_capability"]
        appx_call = dism.calls[1]
        assert appx_call[3] == base / "LXP" / "de-DE" / "License.xml"
        assert dism.calls[2][3] == str(base / "FOD")

    def test_missing_language_pack_is_reported(self, customizer, session):
        success, message = customizer.add_language_resources(
            session, LanguageSelection(enabled=True, language_packs=["missing.cab"]))

        assert not success
        assert "1" in message

    def test_dotnet_without_source(self, customizer, session):
        success, _ = customizer.add_dotnet(session)
        assert not success

    def test_drivers_missing_folder(self, customizer, dism, session, tmp_path):
        drivers = tmp_path / "drivers"
        drivers.mkdir()
        selection = DriverSelection(enabled=True, folders=[str(drivers), str(tmp_path / "gone")])

        success, _ = customizer.add_drivers(session, selection)

        assert not success
        assert [c[0] for c in dism.calls] == ["add_driver"]


class TestOneDrive:
    def test_download_and_replace(self, customizer, dism, fetcher, session, workspace):
        target = session.mount_dir / "Windows" / "SysWOW64" / "OneDriveSetup.exe"
        target.parent.mkdir(parents=True)
        target.write_bytes(b"old")

        success, _ = customizer.refresh_onedrive(session, AgentSelection(enabled=True, download=True))

        assert success
        assert target.read_bytes() == b"payload"
        assert (workspace / "imports" / "OneDrive" / "OneDriveSetup.exe").read_bytes() == b"payload"
        assert fetcher.urls == ["https://go.microsoft.com/fwlink/?linkid=844652"]
        assert [c[1][0] for c in dism.calls if c[0] == "run_command"] == ["takeown", "icacls"]

    def test_missing_installer_without_download(self, customizer, session):
        success, _ = customizer.refresh_onedrive(session, AgentSelection(enabled=True, download=False))
        assert not success


def test_run_script_passes_parameters(customizer, dism, tmp_path):
    script = tmp_path / "Customize.ps1"
    script.write_text("param($Mode)", encoding="utf-8")

    success, _ = customizer.run_script(ScriptSelection(enabled=True, path=str(script),
                                                       parameters='-Mode Full -Tag "two words"'))

    assert success
    cmd = dism.calls[-1][1]
    assert cmd[-5:-4] == [str(script)]
    assert cmd[-4:] == ["-Mode", "Full", "-Tag", '"two words"']
