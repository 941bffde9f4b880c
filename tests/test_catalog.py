"""Tests for the community and ConfigMgr update catalog adapters."""

import json
from unittest.mock import Mock

import pytest

from core.updates.catalog import CommunityCatalog, ConfigMgrCatalog, create_catalog_source

LCU = "2024-01 Cumulative Update for Windows 10 Version 22H2 for x64-based Systems (KB5034122)"
OLD_LCU = "2023-12 Cumulative Update for Windows 10 Version 22H2 for x64-based Systems (KB5033372)"


def _powershell_returns(dism, payload, success=True):
    stdout = payload if isinstance(payload, str) else json.dumps(payload)
    dism.run_powershell = Mock(return_value=(success, stdout, "" if success else "Import-Module failed"))


class TestCommunityCatalog:
    def test_rows_for_same_title_are_grouped(self, dism):
        _powershell_returns(dism, [
            {"Title": LCU, "KBNumber": "5034122", "UpdateOS": "Windows 10", "UpdateBuild": "22H2",
             "UpdateArch": "x64", "UpdateGroup": "LCU", "IsSuperseded": False,
             "FileName": "windows10.0-kb5034122-x64.msu", "OriginUri": "https://dl.example.com/a.msu"},
            {"Title": LCU, "KBNumber": "5034122", "UpdateOS": "Windows 10", "UpdateBuild": "22H2",
             "UpdateArch": "x64", "UpdateGroup": "LCU", "IsSuperseded": False,
             "FileName": "windows10.0-kb5034122-x64.cab", "OriginUri": "https://dl.example.com/a.cab"},
            {"Title": OLD_LCU, "KBNumber": "5033372", "UpdateOS": "Windows 10", "UpdateBuild": "22H2",
             "UpdateArch": "x64", "UpdateGroup": "LCU", "IsSuperseded": "True",
             "FileName": "windows10.0-kb5033372-x64.msu", "OriginUri": "https://dl.example.com/b.msu"},
        ])

        records = CommunityCatalog(dism).query("Windows 10", "22H2", "x64")

        assert [r.title for r in records] == [LCU, OLD_LCU]
        assert [f.name for f in records[0].files] == [
            "windows10.0-kb5034122-x64.msu", "windows10.0-kb5034122-x64.cab"
        ]
        assert records[0].group == "LCU"
        assert records[1].superseded is True

    def test_single_object_output(self, dism):
        _powershell_returns(dism, {"Title": LCU, "FileName": "a.msu", "OriginUri": "https://x/a.msu"})

        records = CommunityCatalog(dism).query("Windows 10", "22H2")

        assert len(records) == 1
        assert records[0].os_family == "Windows 10"

    def test_empty_output(self, dism):
        _powershell_returns(dism, "")

        assert CommunityCatalog(dism).query("Windows 10", "22H2") == []

    def test_query_failure_returns_none(self, dism):
        _powershell_returns(dism, "", success=False)

        assert CommunityCatalog(dism).query("Windows 10", "22H2") is None

    def test_unparseable_output_returns_none(self, dism):
        _powershell_returns(dism, "WARNING: module is outdated")

        assert CommunityCatalog(dism).query("Windows 10", "22H2") is None

    def test_script_filters_and_quotes(self, dism):
        script = CommunityCatalog(dism, module_name="OSDSUS").build_script("Windows 10", "22H2", "x64")

        assert script.startswith("Import-Module OSDSUS")
        assert "$_.UpdateOS -eq 'Windows 10'" in script
        assert "$_.UpdateArch -eq 'x64'" in script
        assert "ConvertTo-Json" in script

    def test_supersedence_map_by_title(self, dism):
        _powershell_returns(dism, [
            {"Title": LCU, "IsSuperseded": False, "FileName": "a.msu"},
            {"Title": OLD_LCU, "IsSuperseded": True, "FileName": "b.msu"},
        ])
        catalog = CommunityCatalog(dism)

        assert catalog.supersedence_map("Windows 10", "22H2") == {LCU: False, OLD_LCU: True}
        assert "UpdateArch" not in dism.run_powershell.call_args[0][0].split("Where-Object")[1].split("|")[0]

    def test_supersedence_map_failure(self, dism):
        _powershell_returns(dism, "", success=False)

        assert CommunityCatalog(dism).supersedence_map("Windows 10", "22H2") is None


class TestConfigMgrCatalog:
    def test_missing_site_configuration(self, dism):
        dism.run_powershell = Mock()

        assert ConfigMgrCatalog(dism, "", "").query("Windows 10", "22H2") is None
        dism.run_powershell.assert_not_called()

    def test_records_filtered_by_architecture(self, dism):
        _powershell_returns(dism, [
            {"Title": LCU, "ArticleID": "5034122", "IsSuperseded": False,
             "Files": [{"FileName": "windows10.0-kb5034122-x64.msu", "SourceURL": "https://x/a.msu"}]},
            {"Title": LCU.replace("x64", "ARM64"), "ArticleID": "5034122", "IsSuperseded": False,
             "Files": {"FileName": "windows10.0-kb5034122-arm64.msu", "SourceURL": "https://x/b.msu"}},
        ])

        records = ConfigMgrCatalog(dism, "PS1", "cm01.contoso.com").query("Windows 10", "22H2", "x64")

        assert len(records) == 1
        assert records[0].arch == "x64"
        assert records[0].files[0].url == "https://x/a.msu"

    def test_single_file_object_is_accepted(self, dism):
        _powershell_returns(dism, {"Title": LCU, "Files": {"FileName": "a.msu", "SourceURL": "https://x/a.msu"}})

        records = ConfigMgrCatalog(dism, "PS1", "cm01").query("Windows 10", "22H2")

        assert [f.name for f in records[0].files] == ["a.msu"]

    @pytest.mark.parametrize("os_family,version,expected", [
        ("Windows 10", "22H2", "%Windows 10%22H2%"),
        ("Windows 11", "23H2", "%Windows 11%23H2%"),
        ("Windows Server", "21H2", "%server operating system%21H2%"),
    ])
    def test_title_filter(self, os_family, version, expected):
        assert ConfigMgrCatalog.title_filter(os_family, version) == expected

    def test_script_targets_site_namespace(self, dism):
        script = ConfigMgrCatalog(dism, "PS1", "cm01").build_script("Windows 10", "22H2")

        assert "root\\SMS\\site_PS1" in script
        assert "SMS_SoftwareUpdate" in script
        assert "SMS_CIContentFiles" in script


class TestFactory:
    def test_default_is_community(self, config, dism):
        assert isinstance(create_catalog_source(config, dism), CommunityCatalog)

    def test_configmgr(self, config, dism):
        config.set("catalog.source", "ConfigMgr")
        config.set("catalog.configmgr.site_code", "PS1")
        config.set("catalog.configmgr.site_server", "cm01")

        source = create_catalog_source(config, dism)

        assert isinstance(source, ConfigMgrCatalog)
        assert source.site_code == "PS1"

    def test_unknown_source_falls_back(self, config, dism):
        config.set("catalog.source", "wsus")

        assert isinstance(create_catalog_source(config, dism), CommunityCatalog)
