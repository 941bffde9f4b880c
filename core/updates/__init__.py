# -*- coding: utf-8 -*-
"""
补丁模块
负责补丁目录查询、分类、下载、过期清理和离线安装
"""

from .models import UpdateClass, UpdateArtifact, ContentFile, CatalogRecord, ArtifactStatus, MOUNT_APPLY_ORDER
from .catalog import CatalogSource, CommunityCatalog, ConfigMgrCatalog, create_catalog_source
from .resolver import UpdateCatalogResolver
from .pruner import SupersedencePruner
from .deployment import PatchDeploymentEngine, ApplyResult

__all__ = [
    'UpdateClass',
    'UpdateArtifact',
    'ContentFile',
    'CatalogRecord',
    'ArtifactStatus',
    'MOUNT_APPLY_ORDER',
    'CatalogSource',
    'CommunityCatalog',
    'ConfigMgrCatalog',
    'create_catalog_source',
    'UpdateCatalogResolver',
    'SupersedencePruner',
    'PatchDeploymentEngine',
    'ApplyResult'
]
