"""Model routing: pick the concrete upstream model for a chat request."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Pattern, Sequence, Tuple

from config import RoutingConfig
from models import ModelSelection, RouteReason
from normalizer import ChatMessage, last_user_text

log = logging.getLogger("chat_relay")


def _keyword_pattern(keywords: Iterable[str]) -> Optional[Pattern[str]]:
    """Case-insensitive whole-word alternation over the vocabulary."""
    words = [re.escape(k) for k in keywords if k]
    if not words:
        return None
    return re.compile(r"\b(?:" + "|".join(words) + r")\b", re.IGNORECASE)


def _matches(pattern: Optional[Pattern[str]], text: str) -> bool:
    return pattern is not None and pattern.search(text) is not None


@dataclass(frozen=True)
class QueryTraits:
    """Independent predicates computed over the latest user query."""

    coding: bool
    math: bool
    writing: bool
    long_context: bool
    length: int


class ModelRouter:
    """
    Decide which upstream model serves a request.

    Priority chain, first match wins:
      1. any image content            -> vision model
      2. empty or retired request id  -> replacement from the retired rules
      3. explicit, non-auto request   -> as requested
      4. "auto"                       -> keyword/length heuristic
    followed by a namespace check that swaps ids with an unknown
    `namespace/` prefix for a default.

    Never raises.
    """

    def __init__(self, routing: RoutingConfig) -> None:
        self._routing = routing
        self._coding_re = _keyword_pattern(routing.coding_keywords)
        self._math_re = _keyword_pattern(routing.math_keywords)
        self._writing_re = _keyword_pattern(routing.writing_keywords)
        self._long_context_re = _keyword_pattern(routing.long_context_keywords)

    @property
    def routing(self) -> RoutingConfig:
        return self._routing

    @staticmethod
    def has_images(messages: Sequence[ChatMessage]) -> bool:
        return any(m.has_images for m in messages)

    def retired_replacement(self, model_id: str) -> Optional[str]:
        """Replacement for a retired model id, or None if it is not retired."""
        for rule in self._routing.retired_rules:
            if rule.matches(model_id):
                return rule.replacement
        return None

    def classify(self, query: str) -> QueryTraits:
        length = len(query)
        return QueryTraits(
            coding=_matches(self._coding_re, query),
            math=_matches(self._math_re, query),
            writing=_matches(self._writing_re, query),
            long_context=length > self._routing.long_context_chars
            or _matches(self._long_context_re, query),
            length=length,
        )

    def select_for_query(self, query: Optional[str]) -> Tuple[str, RouteReason]:
        """Heuristic auto-selection over the latest user query."""
        r = self._routing
        if query is None:
            return r.default_model, RouteReason.LENGTH_DEFAULT

        traits = self.classify(query)
        log.debug("Query traits %s", traits)
        if traits.long_context or traits.writing:
            return r.long_context_model, RouteReason.HEURISTIC_AUTO
        if traits.math or traits.coding:
            return r.reasoning_model, RouteReason.HEURISTIC_AUTO
        if traits.length < r.short_query_chars:
            return r.fast_model, RouteReason.LENGTH_DEFAULT
        return r.versatile_model, RouteReason.LENGTH_DEFAULT

    def has_known_namespace(self, model_id: str) -> bool:
        if "/" not in model_id:
            return True
        namespace = model_id.split("/", 1)[0].lower()
        return namespace in self._routing.known_namespaces

    def route(self, messages: Sequence[ChatMessage], requested: Any = None) -> ModelSelection:
        r = self._routing
        requested_id = "" if requested is None else str(requested).strip()
        multimodal = self.has_images(messages)

        if multimodal:
            model_id, reason = r.vision_model, RouteReason.MULTIMODAL_OVERRIDE
        elif not requested_id:
            model_id, reason = r.default_model, RouteReason.DECOMMISSIONED_FALLBACK
        else:
            replacement = self.retired_replacement(requested_id)
            if replacement is not None:
                log.info("Swapping retired model %r for %r", requested_id, replacement)
                model_id, reason = replacement, RouteReason.DECOMMISSIONED_FALLBACK
            elif requested_id.lower() != r.auto_sentinel:
                model_id, reason = requested_id, RouteReason.EXPLICIT
            else:
                model_id, reason = self.select_for_query(last_user_text(list(messages)))

        if not self.has_known_namespace(model_id):
            fallback = r.vision_model if multimodal else r.default_model
            log.warning("Model %r has an unknown namespace; using %r", model_id, fallback)
            model_id = fallback
            if not multimodal:
                reason = RouteReason.DECOMMISSIONED_FALLBACK

        return ModelSelection(requested_id=requested_id, routed_id=model_id, reason=reason)
