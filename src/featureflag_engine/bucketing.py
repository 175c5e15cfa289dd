"""パーセンテージロールアウトのバケット計算

バケットは SHA-256("<flag_key>:<subject_id>") の先頭 8 バイトを
ビッグエンディアンの符号なし整数として読み、BUCKET_COUNT で割った余り。
ハッシュ関数を変更するとすべてのロールアウト判定が入れ替わるため、
この計算方法は外部契約の一部として扱う。
"""

from __future__ import annotations

import hashlib

BUCKET_COUNT = 10_000


def bucket(flag_key: str, subject_id: str) -> int:
    """(flag_key, subject_id) を [0, BUCKET_COUNT) のバケットに写像する。"""
    digest = hashlib.sha256(f"{flag_key}:{subject_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % BUCKET_COUNT


def in_rollout(bucket_value: int, rollout_percentage: float) -> bool:
    """バケットがロールアウト範囲に含まれるか判定する。"""
    return bucket_value < rollout_percentage * (BUCKET_COUNT // 100)


def is_subject_included(
    flag_key: str, subject_id: str | None, rollout_percentage: float
) -> bool:
    """対象がロールアウトに含まれるか判定する。

    subject_id が無い場合は安定したバケットを決められないため、
    割合に関わらず除外する。
    """
    if not subject_id or rollout_percentage <= 0:
        return False
    if rollout_percentage >= 100:
        return True
    return in_rollout(bucket(flag_key, subject_id), rollout_percentage)
