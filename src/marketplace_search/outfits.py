from __future__ import annotations

import json
import logging
import random
import re
from dataclasses import asdict, dataclass
from typing import Any, Callable

from marketplace_search.openai_utils import ask_stylist, make_client
from marketplace_search.resilience import run_with_timeout


_LOGGER = logging.getLogger(__name__)

TOP_KEYWORDS = (
    "shirt",
    "t-shirt",
    "tshirt",
    "top",
    "blouse",
    "hoodie",
    "sweater",
    "sweatshirt",
    "jacket",
    "coat",
    "polo",
    "tee",
    "cardigan",
)
BOTTOM_KEYWORDS = ("pants", "jeans", "trousers", "shorts", "skirt", "chinos", "joggers", "leggings")

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
_RAW_JSON = re.compile(r"\{[\s\S]*\}")

FALLBACK_SHOE = {
    "brand": "Nike",
    "model": "Air Force 1",
    "reason": "A versatile classic that pairs with most casual outfits.",
}
FALLBACK_REASONING = (
    "Fallback suggestion: the AI stylist was unavailable, so a top and a bottom were picked at random "
    "from the catalog."
)


@dataclass(frozen=True)
class OutfitCandidate:
    id: str
    name: str
    category: str


@dataclass(frozen=True)
class ShopperProfile:
    height_cm: int | None = None
    weight_kg: int | None = None
    prompt: str = ""


@dataclass(frozen=True)
class OutfitSuggestion:
    top: OutfitCandidate | None
    bottom: OutfitCandidate | None
    shoe: dict[str, str]
    reasoning: str
    degraded: bool = False

    def to_public(self) -> dict[str, Any]:
        return {
            "top": asdict(self.top) if self.top else None,
            "bottom": asdict(self.bottom) if self.bottom else None,
            "shoe": dict(self.shoe),
            "reasoning": self.reasoning,
            "degraded": self.degraded,
        }


def partition_candidates(candidates: list[OutfitCandidate]) -> tuple[list[OutfitCandidate], list[OutfitCandidate]]:
    tops: list[OutfitCandidate] = []
    bottoms: list[OutfitCandidate] = []
    for candidate in candidates:
        category = candidate.category.lower()
        if any(keyword in category for keyword in TOP_KEYWORDS):
            tops.append(candidate)
        elif any(keyword in category for keyword in BOTTOM_KEYWORDS):
            bottoms.append(candidate)
    return tops, bottoms


def extract_json(text: str) -> dict[str, Any] | None:
    """Find a JSON object in a model reply, fenced or bare."""
    match = _FENCED_JSON.search(text)
    raw = match.group(1) if match else None
    if raw is None:
        bare = _RAW_JSON.search(text)
        raw = bare.group(0) if bare else None
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def build_prompt(profile: ShopperProfile, tops: list[OutfitCandidate], bottoms: list[OutfitCandidate]) -> str:
    def _lines(items: list[OutfitCandidate]) -> str:
        return "\n".join(f"- id={item.id} | {item.name} | {item.category}" for item in items) or "- (none)"

    return (
        "You are a fashion stylist for an online marketplace.\n"
        "Pick ONE top and ONE bottom from the lists below that work together for this shopper, "
        "and recommend a pair of shoes.\n\n"
        f"HEIGHT_CM: {profile.height_cm if profile.height_cm is not None else 'unknown'}\n"
        f"WEIGHT_KG: {profile.weight_kg if profile.weight_kg is not None else 'unknown'}\n"
        f"STYLE: {profile.prompt or 'no preference'}\n\n"
        f"TOPS:\n{_lines(tops)}\n\n"
        f"BOTTOMS:\n{_lines(bottoms)}\n\n"
        "Respond with JSON only, in this shape:\n"
        '{"topId": "...", "bottomId": "...", '
        '"shoe": {"brand": "...", "model": "...", "reason": "..."}, "reasoning": "..."}\n'
    )


class OutfitSuggestionProvider:
    """Asks a chat model for an outfit; any failure falls back to a random pick."""

    def __init__(
        self,
        api_key: str | None,
        *,
        chat_model: str = "gpt-4o-mini",
        timeout_seconds: float = 8.0,
        client: Any | None = None,
        rng: random.Random | None = None,
        completion_fn: Callable[[Any, str, str], str] = ask_stylist,
    ) -> None:
        self._api_key = api_key
        self.chat_model = chat_model
        self.timeout_seconds = timeout_seconds
        self.client = client
        self.rng = rng or random.Random()
        self._complete = completion_fn

    @property
    def ai_enabled(self) -> bool:
        return self.client is not None or bool(self._api_key)

    def _ensure_client(self):
        if self.client is None:
            if not self._api_key:
                raise RuntimeError("No OpenAI API key configured.")
            self.client = make_client(self._api_key, timeout_seconds=self.timeout_seconds)
        return self.client

    def fallback(self, tops: list[OutfitCandidate], bottoms: list[OutfitCandidate]) -> OutfitSuggestion:
        return OutfitSuggestion(
            top=self.rng.choice(tops) if tops else None,
            bottom=self.rng.choice(bottoms) if bottoms else None,
            shoe=dict(FALLBACK_SHOE),
            reasoning=FALLBACK_REASONING,
            degraded=True,
        )

    def _parse(
        self,
        reply: str,
        tops: list[OutfitCandidate],
        bottoms: list[OutfitCandidate],
    ) -> OutfitSuggestion:
        parsed = extract_json(reply)
        if parsed is None:
            raise ValueError("no JSON object in stylist reply")

        tops_by_id = {item.id: item for item in tops}
        bottoms_by_id = {item.id: item for item in bottoms}
        top = tops_by_id.get(str(parsed.get("topId")))
        bottom = bottoms_by_id.get(str(parsed.get("bottomId")))
        if top is None or bottom is None:
            raise ValueError("stylist picked an unknown top or bottom")

        shoe = parsed.get("shoe") or {}
        if not isinstance(shoe, dict):
            raise ValueError("shoe recommendation is not an object")
        return OutfitSuggestion(
            top=top,
            bottom=bottom,
            shoe={
                "brand": str(shoe.get("brand") or FALLBACK_SHOE["brand"]),
                "model": str(shoe.get("model") or FALLBACK_SHOE["model"]),
                "reason": str(shoe.get("reason") or ""),
            },
            reasoning=str(parsed.get("reasoning") or ""),
        )

    def suggest(self, profile: ShopperProfile, candidates: list[OutfitCandidate]) -> OutfitSuggestion:
        tops, bottoms = partition_candidates(candidates)
        if not self.ai_enabled:
            return self.fallback(tops, bottoms)

        try:
            client = self._ensure_client()
            prompt = build_prompt(profile, tops, bottoms)
            reply = run_with_timeout(
                "Outfit suggestion request",
                lambda: self._complete(client, prompt, self.chat_model),
                self.timeout_seconds,
            )
            return self._parse(reply, tops, bottoms)
        except Exception as exc:
            _LOGGER.warning("Falling back to a random outfit: %s", exc)
            return self.fallback(tops, bottoms)
