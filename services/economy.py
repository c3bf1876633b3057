"""
經濟目錄：票券等級、隊列大小、獎勵數量與內部估值

純查表邏輯，沒有狀態，也沒有副作用。
其他元件一律透過這裡取得經濟常數，不要自己寫死數字。

注意：USD 估值只給內部分析使用，API 層絕對不能回傳給玩家。
"""
from typing import Dict, List, Optional, Tuple

from models import Tier
from core.exceptions import InvalidTier, InvalidQueueSize


TIERS_ORDERED: Tuple[Tier, ...] = (
    Tier.BRONZE,
    Tier.SILVER,
    Tier.GOLD,
    Tier.EMERALD,
    Tier.SAPPHIRE,
    Tier.RUBY,
    Tier.AMETHYST,
    Tier.DIAMOND,
)

QUEUE_SIZES: Tuple[int, ...] = (20, 40, 60)

QUEUE_SIZE_LABELS = {
    20: "Small",
    40: "Medium",
    60: "Large",
}

QUEUE_REWARDS = {
    20: 1,
    40: 2,
    60: 3,
}

ENTRY_COST = 1
BASE_SPIN_FORCE = 18

# 1 張 Bronze = 1 次廣告觀看 = $0.005，每升一級是前一級的 20 倍
BASELINE_AD_REVENUE_USD = 0.005
TIER_MULTIPLIER = 20

# bronze_equivalent, ad_backed_value_usd, inherited_value_usd, priced_at_usd
TIER_ECONOMY: Dict[Tier, Dict[str, float]] = {
    Tier.BRONZE: {
        "bronze_equivalent": 1,
        "ad_backed_value_usd": 0.005,
        "inherited_value_usd": 0.005,
        "priced_at_usd": 0.005,
    },
    Tier.SILVER: {
        "bronze_equivalent": 20,
        "ad_backed_value_usd": 0.10,
        "inherited_value_usd": 0.10,
        "priced_at_usd": 0.08,
    },
    Tier.GOLD: {
        "bronze_equivalent": 400,
        "ad_backed_value_usd": 2.00,
        "inherited_value_usd": 1.60,
        "priced_at_usd": 1.50,
    },
    Tier.EMERALD: {
        "bronze_equivalent": 8000,
        "ad_backed_value_usd": 40.00,
        "inherited_value_usd": 30.00,
        "priced_at_usd": 25.00,
    },
    Tier.SAPPHIRE: {
        "bronze_equivalent": 160000,
        "ad_backed_value_usd": 800.00,
        "inherited_value_usd": 500.00,
        "priced_at_usd": 420.00,
    },
    Tier.RUBY: {
        "bronze_equivalent": 3200000,
        "ad_backed_value_usd": 16000.00,
        "inherited_value_usd": 8400.00,
        "priced_at_usd": 7500.00,
    },
    Tier.AMETHYST: {
        "bronze_equivalent": 64000000,
        "ad_backed_value_usd": 320000.00,
        "inherited_value_usd": 150000.00,
        "priced_at_usd": 100000.00,
    },
    Tier.DIAMOND: {
        "bronze_equivalent": 1280000000,
        "ad_backed_value_usd": 6400000.00,
        "inherited_value_usd": 2000000.00,
        "priced_at_usd": 1000000.00,
    },
}


def tiers_ordered() -> Tuple[Tier, ...]:
    return TIERS_ORDERED


def parse_tier(value) -> Tier:
    """
    把外部輸入轉成 Tier（不分大小寫）

    異常：
        InvalidTier: 不是八個等級之一
    """
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).strip().upper())
    except ValueError:
        raise InvalidTier(value)


def next_tier(tier: Tier) -> Optional[Tier]:
    """最高等級（DIAMOND）沒有下一級，回傳 None"""
    index = TIERS_ORDERED.index(parse_tier(tier))
    if index == len(TIERS_ORDERED) - 1:
        return None
    return TIERS_ORDERED[index + 1]


def queue_sizes_for(tier: Tier) -> Tuple[int, ...]:
    """沒有下一級就沒有獎勵可發，所以最高等級沒有隊列"""
    if next_tier(tier) is None:
        return ()
    return QUEUE_SIZES


def reward_amount(queue_size: int) -> int:
    if queue_size not in QUEUE_REWARDS:
        raise InvalidQueueSize(f"Invalid queue size: {queue_size}")
    return QUEUE_REWARDS[queue_size]


def entry_cost(tier: Tier) -> Tuple[Tier, int]:
    """入場費永遠是 1 張同等級的票"""
    return parse_tier(tier), ENTRY_COST


def validate_queue(tier: Tier, queue_size: int) -> Tuple[Tier, int]:
    tier = parse_tier(tier)
    if queue_size not in queue_sizes_for(tier):
        raise InvalidQueueSize(f"Tier {tier.value} has no queue of size {queue_size}")
    return tier, queue_size


def lucky_number_range(queue_size: int) -> range:
    """幸運號碼範圍 0..queue_size-1，每個號碼剛好對應一個座位"""
    return range(0, queue_size)


def base_spin_force(tier: Tier) -> int:
    # 目前所有等級一致
    return BASE_SPIN_FORCE


def tier_economy(tier: Tier) -> Dict[str, float]:
    return TIER_ECONOMY[parse_tier(tier)]


def bronze_equivalent(tier: Tier, amount: int) -> int:
    return int(tier_economy(tier)["bronze_equivalent"]) * amount


def priced_value_usd(tier: Tier, amount: int) -> float:
    return tier_economy(tier)["priced_at_usd"] * amount


def queue_configs() -> List[dict]:
    """所有可玩的 (tier, queue_size) 組合，給前端列出大廳選項"""
    configs = []
    for tier in TIERS_ORDERED:
        reward_tier = next_tier(tier)
        for size in queue_sizes_for(tier):
            configs.append({
                "tier": tier,
                "next_tier": reward_tier,
                "queue_size": size,
                "reward_amount": QUEUE_REWARDS[size],
                "label": f"{QUEUE_SIZE_LABELS[size]} ({size} players)",
            })
    return configs
