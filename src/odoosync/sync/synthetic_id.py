# -*- coding: utf-8 -*-
"""
synthetic_id - 合成 ID 编解码

部分实体（例如"用户 x 课程"的报名关系）在本地没有独立主键，而 entity_map
只有一个 local_id 槽位。此时把两个 ID 编码成一个整数:

    synthetic = primary * 1_000_000 + secondary    (0 <= secondary < 1_000_000)
"""

from typing import Tuple

from .errors import SyntheticIdOverflowError

SYNTHETIC_ID_MULTIPLIER = 1_000_000


def encode_synthetic_id(primary: int, secondary: int) -> int:
    """
    编码两个 ID 为一个合成 ID。

    Raises:
        SyntheticIdOverflowError: secondary 超出 [0, 1_000_000) 或 primary 为负数
    """
    if secondary < 0 or secondary >= SYNTHETIC_ID_MULTIPLIER:
        raise SyntheticIdOverflowError(
            f"secondary ID 超出合成 ID 编码范围: {secondary}",
            {"primary": primary, "secondary": secondary, "limit": SYNTHETIC_ID_MULTIPLIER},
        )
    if primary < 0:
        raise SyntheticIdOverflowError(
            f"primary ID 不能为负数: {primary}",
            {"primary": primary, "secondary": secondary},
        )
    return primary * SYNTHETIC_ID_MULTIPLIER + secondary


def decode_synthetic_id(synthetic_id: int) -> Tuple[int, int]:
    """解码合成 ID，返回 (primary, secondary)。"""
    if synthetic_id < 0:
        raise SyntheticIdOverflowError(
            f"合成 ID 不能为负数: {synthetic_id}", {"synthetic_id": synthetic_id}
        )
    return divmod(synthetic_id, SYNTHETIC_ID_MULTIPLIER)
