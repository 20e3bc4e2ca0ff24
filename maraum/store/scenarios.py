from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from maraum.errors import NotFoundError

from .models import Scenario

logger = logging.getLogger("maraum.store")

DEFAULT_SCENARIOS: List[Dict[str, Any]] = [
    {
        "id": 1,
        "title": "Marketplace Encounter",
        "emoji": "🛒",
        "sort_order": 1,
        "initial_message_main": (
            "Du stehst auf einem belebten Wochenmarkt in Berlin. Ein Verkäufer an einem Gemüsestand "
            "lächelt dich an. \"Guten Tag! Suchst du etwas Bestimmtes?\""
        ),
        "initial_message_helper": (
            "Ah, you're attempting German. How ambitious. I suppose I could help you stumble through "
            "this conversation. Ask me if you need vocabulary, or just wing it. Your funeral."
        ),
    },
    {
        "id": 2,
        "title": "High School Party",
        "emoji": "🎉",
        "sort_order": 2,
        "initial_message_main": (
            "Du bist auf einer Party in einer Berliner WG. Laute Musik, viele Leute. Jemand kommt auf "
            "dich zu mit zwei Bechern. \"Hey! Willst du auch was trinken? Oder spielst du lieber Flunkyball?\""
        ),
        "initial_message_helper": (
            "A party. How delightfully anxiety-inducing. Let me know if you need help with drinking "
            "vocabulary or flirting phrases. Though honestly, you'll probably need both."
        ),
    },
    {
        "id": 3,
        "title": "Late Night Kebab",
        "emoji": "🥙",
        "sort_order": 3,
        "initial_message_main": (
            "Es ist 2 Uhr morgens. Du stehst in einer Döner-Bude in Kreuzberg. Der Mann hinter der Theke "
            "sieht müde aus. \"Was darf es sein? Mit scharf?\""
        ),
        "initial_message_helper": (
            "The classic Berlin experience: drunk kebab diplomacy. I'll help you navigate the menu, "
            "though I can't promise you'll remember this conversation tomorrow."
        ),
    },
]


def seed_default_scenarios(db: Session) -> int:
    """Insert any missing default scenarios. Existing rows are left untouched."""
    existing = set(db.execute(select(Scenario.id)).scalars())
    added = 0
    for row in DEFAULT_SCENARIOS:
        if row["id"] in existing:
            continue
        db.add(Scenario(is_active=True, **row))
        added += 1
    if added:
        db.commit()
        logger.info(json.dumps({"event": "scenarios_seeded", "count": added}))
    return added


def list_active_scenarios(db: Session) -> List[Scenario]:
    stmt = (
        select(Scenario)
        .where(Scenario.is_active.is_(True))
        .order_by(Scenario.sort_order.asc(), Scenario.id.asc())
    )
    return list(db.execute(stmt).scalars())


def get_active_scenario(db: Session, scenario_id: int) -> Scenario:
    scenario = db.get(Scenario, scenario_id)
    if scenario is None or not scenario.is_active:
        raise NotFoundError("scenario not found", {"scenario_id": scenario_id})
    return scenario


def scenario_to_dict(scenario: Scenario) -> Dict[str, Any]:
    return {
        "id": scenario.id,
        "title": scenario.title,
        "emoji": scenario.emoji,
        "initial_message_main": scenario.initial_message_main,
        "initial_message_helper": scenario.initial_message_helper,
        "is_active": scenario.is_active,
        "sort_order": scenario.sort_order,
    }


__all__ = [
    "DEFAULT_SCENARIOS",
    "get_active_scenario",
    "list_active_scenarios",
    "scenario_to_dict",
    "seed_default_scenarios",
]
