# -*- coding: utf-8 -*-
"""
Portfolio advice from a chat-completion model.

Azure OpenAI is used when its endpoint, key and deployment are configured;
otherwise a plain OpenAI client is used if OPENAI_API_KEY is set.
"""

from __future__ import annotations

import json
import logging
import math
import os
from typing import Dict, List

import openai
from openai import AzureOpenAI, OpenAI

import config
from models import RISK_LABELS

logger = logging.getLogger(__name__)

_NUMERIC_FIELDS = ("totalMarketValue", "totalCost", "totalUnrealizedPnL", "concentration")

SYSTEM_PROMPT = (
    "你是一位專業、中立的投資組合分析師。請根據使用者提供的持股資料與風險偏好，"
    "以繁體中文提供精簡的投資組合觀察與調整方向。"
    "內容需包含：整體損益概況、集中度風險、是否符合風險偏好、2-4 點具體可執行的建議。"
    "請勿捏造資料，並在最後提醒本建議僅供參考，不構成投資建議。"
)


class AdviceError(Exception):
    """Raised when the model call fails or returns nothing usable."""


class AdviceConfigError(AdviceError):
    """Raised when no LLM backend is configured."""


class AdviceRequestError(AdviceError):
    """Raised for an invalid advice request (maps to HTTP 400)."""


def validate_advice_payload(payload) -> Dict:
    if not payload or not isinstance(payload, dict):
        raise AdviceRequestError("請提供投資組合資料")
    holdings = payload.get("holdings")
    if not holdings or not isinstance(holdings, list):
        raise AdviceRequestError("投資組合中沒有持股資料")
    # 限制持股數量避免 token 超限
    if len(holdings) > config.MAX_ADVICE_HOLDINGS:
        raise AdviceRequestError(f"單次分析最多支援 {config.MAX_ADVICE_HOLDINGS} 檔持股")

    cleaned = dict(payload)
    for key in _NUMERIC_FIELDS:
        value = payload.get(key, 0)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise AdviceRequestError(f"投資組合資料格式錯誤: {key} 必須為數字")
        cleaned[key] = float(value)
    return cleaned


def build_advice_prompt(payload: Dict) -> List[Dict[str, str]]:
    risk = payload.get("riskLevel", "balanced")
    currency = payload.get("baseCurrency", "USD")
    lines = [
        f"投資組合名稱：{payload.get('profileName', '')}",
        f"風險偏好：{RISK_LABELS.get(risk, risk)}",
        f"市場：{payload.get('market', 'US')}，計價幣別：{currency}",
        f"總市值：{payload.get('totalMarketValue', 0):,.2f} {currency}",
        f"總成本：{payload.get('totalCost', 0):,.2f} {currency}",
        f"未實現損益：{payload.get('totalUnrealizedPnL', 0):,.2f} {currency}",
        f"前三大持股佔比：{payload.get('concentration', 0) * 100:.1f}%",
        "",
        "持股明細（JSON）：",
        json.dumps(payload.get("holdings", []), ensure_ascii=False),
    ]
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "\n".join(lines)},
    ]


def _build_client():
    """Return ``(client, model)`` for whichever backend is configured."""
    endpoint = os.environ.get("AZURE_OPENAI_ENDPOINT")
    azure_key = os.environ.get("AZURE_OPENAI_API_KEY")
    deployment = os.environ.get("AZURE_OPENAI_DEPLOYMENT")
    if endpoint and azure_key and deployment:
        client = AzureOpenAI(
            api_key=azure_key,
            azure_endpoint=endpoint,
            api_version=os.environ.get("AZURE_OPENAI_API_VERSION", config.DEFAULT_AZURE_API_VERSION),
        )
        return client, deployment

    api_key = os.environ.get("OPENAI_API_KEY")
    if api_key:
        return OpenAI(api_key=api_key), os.environ.get("OPENAI_MODEL", config.DEFAULT_OPENAI_MODEL)

    raise AdviceConfigError(
        "AI 服務未設定：請設定 AZURE_OPENAI_ENDPOINT / AZURE_OPENAI_API_KEY / AZURE_OPENAI_DEPLOYMENT 或 OPENAI_API_KEY"
    )


def get_portfolio_advice(payload: Dict, client=None, model: str = None) -> str:
    """Ask the model for advice on ``payload`` (see portfolio.build_portfolio_payload)."""
    payload = validate_advice_payload(payload)
    if client is None:
        client, model = _build_client()
    model = model or os.environ.get("OPENAI_MODEL", config.DEFAULT_OPENAI_MODEL)

    logger.info("Requesting advice for %d holdings from %s", len(payload["holdings"]), model)
    try:
        response = client.chat.completions.create(
            model=model,
            messages=build_advice_prompt(payload),
            temperature=0.7,
            max_tokens=1200,
        )
    except openai.OpenAIError as e:
        logger.error("Advice request failed: %s", e)
        raise AdviceError(f"AI 服務錯誤: {e}") from e

    content = (response.choices[0].message.content or "").strip() if response.choices else ""
    if not content:
        raise AdviceError("AI 未回傳任何建議內容")
    return content
