"""
Pytest configuration and shared fixtures for WIMCustomizer tests.

The servicing subsystem (DISM, expand, reg, PowerShell), the update catalog and
the HTTP client are replaced by in-memory fakes so the tests run on any OS.
"""

import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from core.config_manager import ConfigManager
from core.updates.catalog import CatalogSource
from core.updates.models import CatalogRecord, ContentFile


def _norm(path) -> str:
    return os.path.normcase(os.path.abspath(str(path)))


class FakeDism:
    """In-memory stand-in for DismManager.

    Every call is appended to ``calls`` as ``(method, *args)`` so tests can
    assert on ordering.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.mounted: List[Dict[str, str]] = []
        self.image_info: Dict[str, str] = {
            "index": "1",
            "name": "Windows 10 Enterprise",
            "description": "Windows 10 Enterprise",
            "edition": "Enterprise",
            "architecture": "x64",
            "version": "10.0.19045",
            "build": "10.0.19045.3803",
        }
        self.indexes: List[Dict[str, str]] = [
            {"index": "1", "name": "Windows 10 Education", "description": ""},
            {"index": "2", "name": "Windows 10 Enterprise", "description": ""},
            {"index": "3", "name": "Windows 10 Pro", "description": ""},
        ]
        self.cabinet_contents: Dict[str, List[str]] = {}
        self.expand_contents: Dict[str, List[str]] = {}
        self.provisioned: List[Dict[str, str]] = []
        self.failing_packages: List[str] = []
        self.fail_mount = False
        self.fail_commit = False
        self.fail_discard = False
        self.fail_export = False
        self.admin = True
        self.fail_mount_query = False

    # --- mount ---

    def get_mounted_images(self):
        self.calls.append(("get_mounted_images",))
        if self.fail_mount_query:
            return None
        return list(self.mounted)

    def mount_image(self, image_file, index, mount_dir):
        self.calls.append(("mount_image", str(image_file), index, str(mount_dir)))
        if self.fail_mount:
            return False, "", "Error: 0xc1420127"
        self.mounted.append({"mount_dir": str(mount_dir), "image_file": str(image_file),
                             "index": str(index), "status": "Ok"})
        Path(mount_dir, "Windows").mkdir(parents=True, exist_ok=True)
        return True, "The operation completed successfully.", ""

    def unmount_image(self, mount_dir, commit):
        self.calls.append(("unmount_image", str(mount_dir), commit))
        if (commit and self.fail_commit) or (not commit and self.fail_discard):
            return False, "", "Error: 0xc1420117"
        self.mounted = [m for m in self.mounted if _norm(m["mount_dir"]) != _norm(mount_dir)]
        for child in Path(mount_dir).iterdir() if Path(mount_dir).is_dir() else []:
            if child.is_dir():
                shutil.rmtree(child)
            else:
                child.unlink()
        return True, "The operation completed successfully.", ""

    # --- image files ---

    def get_image_info(self, image_file, index):
        self.calls.append(("get_image_info", str(image_file), index))
        if str(index) not in [i["index"] for i in self.indexes]:
            return None
        return dict(self.image_info)

    def get_image_indexes(self, image_file):
        self.calls.append(("get_image_indexes", str(image_file)))
        return [dict(i) for i in self.indexes]

    def delete_image(self, image_file, index):
        self.calls.append(("delete_image", str(image_file), index))
        return True, "", ""

    def export_image(self, source_file, source_index, destination_file, destination_name):
        self.calls.append(("export_image", str(source_file), source_index, str(destination_file), destination_name))
        if self.fail_export:
            return False, "", "Error: 112 There is not enough space on the disk."
        Path(destination_file).write_bytes(b"exported")
        return True, "", ""

    # --- offline servicing ---

    def add_package(self, mount_dir, package_path):
        self.calls.append(("add_package", str(mount_dir), Path(package_path).name))
        if Path(package_path).name in self.failing_packages:
            return False, "", "Error: 0x800f081e"
        return True, "", ""

    def add_driver(self, mount_dir, driver_path, recurse=True):
        self.calls.append(("add_driver", str(mount_dir), str(driver_path), recurse))
        return True, "", ""

    def add_capability(self, mount_dir, capability_name, source):
        self.calls.append(("add_capability", str(mount_dir), capability_name, str(source)))
        return True, "", ""

    def add_provisioned_appx(self, mount_dir, package_path, license_path=None):
        self.calls.append(("add_provisioned_appx", str(mount_dir), str(package_path), license_path))
        return True, "", ""

    def get_provisioned_appx(self, mount_dir):
        self.calls.append(("get_provisioned_appx", str(mount_dir)))
        return list(self.provisioned)

    def remove_provisioned_appx(self, mount_dir, package_name):
        self.calls.append(("remove_provisioned_appx", str(mount_dir), package_name))
        return True, "", ""

    def import_app_associations(self, mount_dir, xml_path):
        self.calls.append(("import_app_associations", str(mount_dir), str(xml_path)))
        return True, "", ""

    # --- archives ---

    def expand_file(self, source, destination, pattern="*"):
        self.calls.append(("expand_file", Path(source).name, str(destination)))
        Path(destination).mkdir(parents=True, exist_ok=True)
        for name in self.expand_contents.get(Path(source).name, []):
            Path(destination, name).write_bytes(b"cab")
        return True, "", ""

    def list_cabinet(self, source):
        self.calls.append(("list_cabinet", Path(source).name))
        return self.cabinet_contents.get(Path(source).name)

    # --- misc ---

    def run_command(self, cmd, cwd=None):
        self.calls.append(("run_command", [str(c) for c in cmd]))
        return True, "", ""

    def run_powershell(self, script):
        self.calls.append(("run_powershell", script))
        return True, "[]", ""

    def get_powershell_path(self):
        return Path("powershell.exe")

    def get_oscdimg_path(self):
        return Path("oscdimg.exe")

    def check_admin_privileges(self):
        return self.admin

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def packages_added(self) -> List[str]:
        return [c[2] for c in self.calls if c[0] == "add_package"]


class FakeCatalog(CatalogSource):
    """Catalog source returning a fixed list of records."""

    name = "fake"

    def __init__(self, records: Optional[List[CatalogRecord]] = None):
        super().__init__(None)
        self.records = records or []
        self.fail = False
        self.queries = 0

    def query(self, os_family, version, arch=None):
        self.queries += 1
        if self.fail:
            return None
        return [
            CatalogRecord(
                title=r.title, article_id=r.article_id, superseded=r.superseded, group=r.group,
                os_family=r.os_family, version=r.version, arch=r.arch,
                files=[ContentFile(name=f.name, url=f.url) for f in r.files],
            )
            for r in self.records
        ]


class FakeResponse:
    def __init__(self, content: bytes = b"payload", status_code: int = 200):
        self.content = content
        self.status_code = status_code
        self.ok = status_code < 400
        self.headers = {"content-length": str(len(content))}

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]


class FakeFetcher:
    """Minimal ``requests``-compatible client recording requested URLs."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.urls: List[str] = []

    def get(self, url, stream=False, allow_redirects=True):
        self.urls.append(url)
        return FakeResponse(status_code=self.status_code)


def make_record(title, files, superseded=False, group="", arch="x64", article_id="") -> CatalogRecord:
    return CatalogRecord(
        title=title,
        article_id=article_id,
        superseded=superseded,
        group=group,
        os_family="Windows 10",
        version="22H2",
        arch=arch,
        files=[ContentFile(name=name, url=f"https://download.example.com/{name}") for name in files],
    )


@pytest.fixture
def workspace(tmp_path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path, workspace) -> ConfigManager:
    manager = ConfigManager(tmp_path / "config" / "wim_customizer.json")
    manager.set("paths.workspace", str(workspace))
    manager.set("validation.min_free_gb", 0)
    return manager


@pytest.fixture
def dism() -> FakeDism:
    return FakeDism()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()
