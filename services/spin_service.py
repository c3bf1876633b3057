"""
轉盤計算服務：從 seed 與玩家號碼推導開獎結果

純計算邏輯，不碰資料庫、不改狀態。公開且可稽核的演算法：

1. spin_force_base  = 等級的基礎力道（目前固定 18）
2. spin_force_total = spin_force_base + sum(seat_number * lucky_number)
3. spin_force_final = spin_force_total
                      + uint32(HMAC-SHA256(key=seed, msg=str(spin_force_total))[0:4])
4. wheel_segments   = [{segment: i + 1, number: i} for i in range(queue_size)]
5. winning_segment  = spin_force_final % queue_size + 1
   winning_number   = wheel_segments[winning_segment - 1].number

滿員時號碼集合固定是 0..queue_size-1，單純加總會是常數，所以用座位號加權：
座位 i、j 的玩家交換號碼 a、b，總和就改變 (j - i) * (b - a)，進而改變 HMAC 的輸入。
同樣的 seed、基礎力道與 (座位, 號碼) 配對，永遠得到同樣的 winning_number。

轉盤角度只是動畫用的顯示值，開獎只看 winning_number。
"""
import hashlib
import hmac
import math
import secrets
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

# 指針在 270°，原始轉盤圖的第一格中心在 279°
POINTER_ANGLE = 270
WHEEL_OFFSET = 279
MIN_ROTATIONS = 6
MAX_EXTRA_ROTATIONS = 12
ROTATION_STEP = 0.5


@dataclass(frozen=True)
class SpinOutcome:
    seed: str
    spin_force_base: int
    spin_force_total: int
    spin_force_final: int
    wheel_segments: List[dict] = field(default_factory=list)
    winning_segment: int = 0
    winning_number: int = 0
    spin_rotation_start: float = 0.0
    spin_rotation_end: float = 0.0
    spin_total_degrees: float = 0.0


def generate_seed() -> str:
    return secrets.token_hex(32)


def build_wheel_segments(queue_size: int) -> List[dict]:
    """把號碼範圍切成 queue_size 格，每格對應一個號碼"""
    return [{"segment": index + 1, "number": index} for index in range(queue_size)]


def compute_spin_force_total(spin_force_base: int, seats: Iterable[Tuple[int, int]]) -> int:
    """seats: (seat_number, lucky_number) 配對，seat_number 從 1 開始"""
    return spin_force_base + sum(seat_number * lucky_number for seat_number, lucky_number in seats)


def fold_seed(seed: str, spin_force_total: int) -> int:
    digest = hmac.new(
        seed.encode("utf-8"),
        str(spin_force_total).encode("ascii"),
        hashlib.sha256
    ).digest()
    return spin_force_total + int.from_bytes(digest[:4], "big")


def normalize_rotation(rotation: float) -> float:
    return rotation % 360


def segment_for_rotation(rotation: float, segment_count: int) -> int:
    """給定轉盤角度，回傳指針指到的格子（1-based）"""
    normalized = normalize_rotation(rotation)
    arrow_angle = (POINTER_ANGLE - normalized + 360) % 360
    diff = (arrow_angle - WHEEL_OFFSET + 360) % 360
    # 四捨五入（不用 round()，它是銀行家捨入）
    index = math.floor(diff / (360 / segment_count) + 0.5) % segment_count
    return index + 1


def calculate_trajectory(seed: str, spin_force_total: int, winning_segment: int, segment_count: int):
    """
    計算動畫用的起訖角度

    返回：
        (rotation_start, rotation_end, total_degrees)
    """
    rotation_start = float(
        int.from_bytes(hashlib.sha256(seed.encode("utf-8")).digest()[4:8], "big") % 360
    )
    extra_rotations = min(max(0, spin_force_total // 5), MAX_EXTRA_ROTATIONS)
    base_rotation = rotation_start + (MIN_ROTATIONS + extra_rotations) * 360

    rotation_end = base_rotation
    offset = 0.0
    while offset <= 360:
        candidate = base_rotation + offset
        if segment_for_rotation(candidate, segment_count) == winning_segment:
            rotation_end = candidate
            break
        offset += ROTATION_STEP

    return rotation_start, rotation_end, rotation_end - rotation_start


def compute_outcome(seed: str, spin_force_base: int, seats: Iterable[Tuple[int, int]], queue_size: int) -> SpinOutcome:
    """
    計算完整的開獎結果

    參數：
        seed: 不透明的隨機字串（會被記錄下來供稽核）
        spin_force_base: 基礎力道
        seats: 所有座位的 (seat_number, lucky_number)
        queue_size: 大廳容量（也是轉盤格數）

    返回：
        SpinOutcome
    """
    segments = build_wheel_segments(queue_size)
    spin_force_total = compute_spin_force_total(spin_force_base, seats)
    spin_force_final = fold_seed(seed, spin_force_total)

    winning_segment = spin_force_final % queue_size + 1
    winning_number = segments[winning_segment - 1]["number"]

    rotation_start, rotation_end, total_degrees = calculate_trajectory(
        seed, spin_force_total, winning_segment, queue_size
    )

    return SpinOutcome(
        seed=seed,
        spin_force_base=spin_force_base,
        spin_force_total=spin_force_total,
        spin_force_final=spin_force_final,
        wheel_segments=segments,
        winning_segment=winning_segment,
        winning_number=winning_number,
        spin_rotation_start=rotation_start,
        spin_rotation_end=rotation_end,
        spin_total_degrees=total_degrees,
    )
