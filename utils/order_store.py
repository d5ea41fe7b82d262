#!/usr/bin/env python3
"""
代理组自定义排序
按服务器保存 {组名: 序号}，数据存放在本地 JSON 文件中
"""
import json
import os
import sys
from typing import Dict, List, Optional, Sequence

from core.models import GLOBAL_GROUP, ProxyGroup
from utils.logger import log

KEY_PREFIX = "proxyGroups.customOrder."


class CustomOrderStore:
    """
    自定义排序存储

    文件内容是一个扁平的键值表，键为 proxyGroups.customOrder.<服务器ID>
    """

    def __init__(self, path: str, server_id: str):
        self.path = path
        self.server_id = server_id

    @property
    def key(self) -> str:
        return f"{KEY_PREFIX}{self.server_id}"

    def _read_all(self) -> Dict[str, Dict[str, int]]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.warning(f"读取排序文件失败 {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, Dict[str, int]]):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    def save_custom_order(self, group_names: Sequence[str]):
        """按给定顺序保存当前服务器的组排序"""
        data = self._read_all()
        data[self.key] = {name: index for index, name in enumerate(group_names)}
        self._write_all(data)
        log.info(f"✅ 已保存 {len(group_names)} 个代理组的排序")

    def load_custom_order(self) -> Optional[Dict[str, int]]:
        order = self._read_all().get(self.key)
        if not isinstance(order, dict):
            return None
        return {str(k): int(v) for k, v in order.items() if isinstance(v, int)}

    def clear(self):
        data = self._read_all()
        if data.pop(self.key, None) is not None:
            self._write_all(data)
            log.info("已清除自定义排序")

    def get_sorted_groups(self, groups: Sequence[ProxyGroup], sort_mode: bool = False) -> List[ProxyGroup]:
        """
        返回展示顺序的代理组

        Args:
            groups: 当前所有代理组
            sort_mode: 是否启用自定义排序

        Returns:
            排序后的代理组列表
        """
        if sort_mode:
            saved = self.load_custom_order()
            if saved and all(g.name in saved for g in groups):
                return sorted(groups, key=lambda g: saved[g.name])

        global_group = next((g for g in groups if g.name == GLOBAL_GROUP), None)
        if global_group is not None:
            order = list(global_group.all) + [GLOBAL_GROUP]
            positions: Dict[str, int] = {}
            for index, name in enumerate(order):
                positions.setdefault(name, index)
            return sorted(groups, key=lambda g: positions.get(g.name, sys.maxsize))

        return sorted(groups, key=lambda g: g.name)
