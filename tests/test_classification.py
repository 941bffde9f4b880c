"""Tests for the ordered classification rules and content file filters."""

import pytest

from core.updates.classification import (
    CLASSIFICATION_RULES,
    classify_title,
    filter_content_files,
    is_offline_compatible,
    matches_architecture,
)
from core.updates.models import UpdateClass


@pytest.mark.parametrize("title,expected", [
    ("2024-01 Servicing Stack Update for Windows 10 Version 21H2 for x64-based Systems (KB5031539)", UpdateClass.SSU),
    ("2024-01 Cumulative Update for Windows 10 Version 22H2 for x64-based Systems (KB5034122)", UpdateClass.LCU),
    ("2024-01 Cumulative Update for Microsoft server operating system version 21H2 for x64-based Systems (KB5034129)",
     UpdateClass.LCU),
    ("2024-01 Dynamic Cumulative Update for Windows 11 Version 23H2 for x64-based Systems (KB5034123)",
     UpdateClass.DYNAMIC),
    ("2024-01 Safe OS Dynamic Update for Windows 11 Version 23H2 for x64-based Systems (KB5034232)",
     UpdateClass.DYNAMIC),
    ("2024-01 Cumulative Update for .NET Framework 3.5 and 4.8.1 for Windows 10 Version 22H2 for x64 (KB5033909)",
     UpdateClass.DOTNET_CU),
    ("2023-10 Cumulative Update for Microsoft .NET Framework 4.8 for Windows 10 (KB5031005)", UpdateClass.DOTNET_CU),
    ("Microsoft .NET Framework 4.8.1 for Windows 10 Version 22H2 for x64 (KB5011048)", UpdateClass.DOTNET),
    ("Security Update for Adobe Flash Player for Windows 10 Version 1607 (KB4580325)", UpdateClass.ADOBE),
    ("Windows Malicious Software Removal Tool x64 - v5.120 (KB890830)", UpdateClass.OPTIONAL),
])
def test_classify_title(title, expected):
    assert classify_title(title) is expected


def test_specific_rules_come_before_generic_cumulative_rule():
    patterns = [pattern for pattern, _ in CLASSIFICATION_RULES]
    generic = patterns.index("*cumulative update for windows*")
    assert patterns.index("*dynamic*update*") < generic
    assert patterns.index("*cumulative update for .net framework*") < generic


def test_group_hint_takes_precedence():
    title = "2024-01 Cumulative Update for Windows 11 Version 23H2 for x64-based Systems (KB5034123)"
    assert classify_title(title, group_hint="SetupDU") is UpdateClass.DYNAMIC


def test_unknown_group_hint_falls_back_to_rules():
    title = "2024-01 Servicing Stack Update for Windows 10 Version 21H2 for x64-based Systems (KB5031539)"
    assert classify_title(title, group_hint="Something Else") is UpdateClass.SSU


@pytest.mark.parametrize("name,expected", [
    ("windows10.0-kb5034122-x64_0f2b9a1.msu", True),
    ("ssu-19041.3745-x64.cab", True),
    ("Windows10.0-KB5034122-x64-express.cab", False),
    ("windows10.0-kb5034122-x64-baseless.cab", False),
    ("windows10.0-kb5034122-x64-delta.cab", False),
    ("windows10.0-kb5034122-x64.psf", False),
    ("microsoft-windows-netfx3-ondemand-package-featureonly.cab", False),
    ("windows-kb890830-x64-v5.120.exe", False),
])
def test_is_offline_compatible(name, expected):
    assert is_offline_compatible(name) is expected


@pytest.mark.parametrize("name,arch,expected", [
    ("windows11.0-kb5034123-x64.msu", "x64", True),
    ("windows11.0-kb5034123-arm64.msu", "x64", False),
    ("windows10.0-kb5034122-x86.cab", "x64", False),
    ("windows10.0-kb5034122-x86.cab", "x86", True),
    ("ndp481-kb5033909-amd64.cab", "x64", True),
    ("windows10.0-kb5033909.cab", "arm64", True),
])
def test_matches_architecture(name, arch, expected):
    assert matches_architecture(name, arch) is expected


def test_filter_content_files_keeps_order():
    names = [
        "windows10.0-kb5034122-x64.msu",
        "windows10.0-kb5034122-x64-express.cab",
        "windows10.0-kb5034122-x86.msu",
        "windows10.0-kb5034122-x64.cab",
    ]
    assert filter_content_files(names, "x64") == [
        "windows10.0-kb5034122-x64.msu",
        "windows10.0-kb5034122-x64.cab",
    ]
