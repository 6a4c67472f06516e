"""
Message Renderer — turns a milestone into the text the owner receives.

Pure and deterministic: same inputs always give the same text.
"""
from __future__ import annotations

from datetime import date
from typing import Union

from core.errors import ValidationError
from models.schemas import MilestoneKind

TEMPLATES: dict[MilestoneKind, str] = {
    MilestoneKind.SIX_MONTHS: (
        "【重要なお知らせ】\n"
        "{credential_type}の期限が6ヶ月後に迫っています。\n"
        "期限日: {expiry}\n"
        "\n"
        "早めの更新手続きをお勧めします。"
    ),
    MilestoneKind.THREE_MONTHS: (
        "【重要なお知らせ】\n"
        "{credential_type}の期限が3ヶ月後に迫っています。\n"
        "期限日: {expiry}\n"
        "\n"
        "更新手続きを開始してください。"
    ),
    MilestoneKind.ONE_WEEK: (
        "【緊急】\n"
        "{credential_type}の期限が1週間後に迫っています！\n"
        "期限日: {expiry}\n"
        "\n"
        "至急更新手続きを行ってください。"
    ),
}

FALLBACK_TEMPLATE = (
    "【お知らせ】\n"
    "{credential_type}の期限が近づいています。\n"
    "期限日: {expiry}"
)


def format_expiry(expiry_date: date) -> str:
    return f"{expiry_date.year:04d}年{expiry_date.month:02d}月{expiry_date.day:02d}日"


def parse_milestone(value: Union[str, MilestoneKind]) -> MilestoneKind:
    """Resolve a milestone kind from user input, rejecting unknown kinds."""
    try:
        return MilestoneKind(value)
    except ValueError:
        allowed = ", ".join(m.value for m in MilestoneKind)
        raise ValidationError(f"Unknown milestone type '{value}' (expected one of: {allowed})")


def render_message(
    milestone: Union[str, MilestoneKind], credential_type: str, expiry_date: date,
) -> str:
    try:
        template = TEMPLATES[MilestoneKind(milestone)]
    except ValueError:
        template = FALLBACK_TEMPLATE
    return template.format(credential_type=credential_type, expiry=format_expiry(expiry_date))
