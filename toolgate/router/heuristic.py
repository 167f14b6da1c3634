"""
Stage 1: deterministic keyword routing over the latest user utterance.

Priority (first match wins):
  vision > ui navigation > explicit datastore reference > entity + CRUD verb > general chat

Vision comes first because the vision-capable model is not the tool-calling model.
Keyword lists are German and English, matching the product's users.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Sequence, Tuple

Stage1Kind = Literal["vision", "ui_action", "db_reference", "entity_crud", "general_chat", "no_user_message"]

VISION_KEYWORDS: Tuple[str, ...] = (
    # de: direct questions
    "siehst du",
    "erkennst du",
    "was siehst du",
    "was zeigt",
    "was ist auf dem",
    "beschreibe was",
    "beschreib was",
    "kannst du sehen",
    "kannst du das sehen",
    "schau dir",
    "schau mal",
    "guck dir",
    "guck mal",
    # de: screenshot/image
    "screenshot",
    "bildschirm",
    "ansicht",
    "auf dem bild",
    "im bild",
    "das bild",
    "dieses bild",
    # de: visual analysis
    "visuell",
    "optisch",
    "aussehen",
    "sieht aus",
    "farbe",
    "farben",
    "layout",
    "design",
    "ui",
    "oberfläche",
    # en
    "do you see",
    "can you see",
    "what do you see",
    "what is on",
    "describe what",
    "look at",
    "looking at",
    "the image",
    "this image",
    "on screen",
    "visual",
    "visually",
)

UI_KEYWORDS: Tuple[str, ...] = (
    # de: navigation
    "navigiere",
    "gehe zu",
    "öffne",
    "zeig mir",
    "zeige",
    "gehe zur",
    "gehe zum",
    "gehe auf",
    # de: panels
    "klappe",
    "klapp",
    "schließe",
    "schließ",
    "verstecke",
    "versteck",
    "toggle",
    "umschalten",
    "sidebar",
    "seitenleiste",
    "menü",
    "menu",
    "panel",
    # en
    "navigate",
    "go to",
    "open",
    "show",
    "close",
    "hide",
)

DB_KEYWORDS: Tuple[str, ...] = (
    "datenbank",
    "database",
    "tabelle",
    "table",
    "eintrag",
    "einträge",
    "record",
    "records",
    "datensatz",
    "datensätze",
    "supabase",
    "db",
)

DB_ENTITIES: Tuple[str, ...] = (
    # de
    "rolle",
    "rollen",
    "benutzer",
    "nutzer",
    "profil",
    "profile",
    "fehler",
    "bug",
    "bugs",
    "feature",
    "features",
    "theme",
    "themes",
    "thema",
    "themen",
    # en
    "roles",
    "users",
    "profiles",
    "user",
)

# Checked in this order; the first verb family with a hit wins.
CRUD_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "read": (
        "zeige",
        "zeig",
        "liste",
        "auflisten",
        "show",
        "list",
        "get",
        "finde",
        "find",
        "suche",
        "search",
        "abfrage",
        "query",
        "hole",
        "fetch",
        "alle",
        "all",
        "wieviele",
        "how many",
    ),
    "create": (
        "erstelle",
        "erstellen",
        "create",
        "anlegen",
        "lege an",
        "leg an",
        "lege",
        "neue",
        "neuen",
        "neuer",
        "new",
        "add",
        "hinzufügen",
        "füge hinzu",
        "insert",
        "einfügen",
    ),
    "update": (
        "ändere",
        "ändern",
        "update",
        "bearbeite",
        "bearbeiten",
        "edit",
        "setze",
        "set",
        "aktualisiere",
        "aktualisieren",
        "modify",
        "modifiziere",
    ),
    "delete": ("lösche", "löschen", "delete", "remove", "entferne", "entfernen", "drop"),
}

MUTATION_VERBS = ("create", "update", "delete")


@dataclass(frozen=True)
class Stage1Result:
    kind: Stage1Kind
    reason: str
    matched: Optional[str] = None
    # Verb families seen in the utterance, even when they did not decide the route.
    crud_verbs: Tuple[str, ...] = ()

    @property
    def needs_tools(self) -> bool:
        return self.kind in ("ui_action", "db_reference", "entity_crud")

    @property
    def needs_screenshot(self) -> bool:
        return self.kind == "vision"

    @property
    def fell_through(self) -> bool:
        return self.kind in ("general_chat", "no_user_message")

    @property
    def mutation_verb(self) -> Optional[str]:
        for v in self.crud_verbs:
            if v in MUTATION_VERBS:
                return v
        return None


def _compile(words: Sequence[str]) -> List[Tuple[str, "re.Pattern[str]"]]:
    # Anchored at a word start so "ui" does not fire inside "build" or "guide".
    return [(w, re.compile(r"(?<!\w)" + re.escape(w))) for w in words]


_VISION = _compile(VISION_KEYWORDS)
_UI = _compile(UI_KEYWORDS)
_DB = _compile(DB_KEYWORDS)
_ENTITIES = _compile(DB_ENTITIES)
_CRUD = {fam: _compile(words) for fam, words in CRUD_KEYWORDS.items()}


def _first(patterns: List[Tuple[str, "re.Pattern[str]"]], text: str) -> Optional[str]:
    for word, pat in patterns:
        if pat.search(text):
            return word
    return None


def normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def crud_families(text: str) -> Tuple[str, ...]:
    t = normalize(text)
    return tuple(fam for fam, pats in _CRUD.items() if _first(pats, t))


def classify_utterance(text: Optional[str]) -> Stage1Result:
    """
    Classify one user utterance. Pure and deterministic.
    """
    if text is None:
        return Stage1Result(kind="no_user_message", reason="no-user-message")

    t = normalize(text)
    verbs = crud_families(t)

    kw = _first(_VISION, t)
    if kw:
        return Stage1Result(kind="vision", reason=f"vision-request:{kw}", matched=kw, crud_verbs=verbs)

    kw = _first(_UI, t)
    if kw:
        return Stage1Result(kind="ui_action", reason=f"ui-action:{kw}", matched=kw, crud_verbs=verbs)

    kw = _first(_DB, t)
    if kw:
        return Stage1Result(kind="db_reference", reason="explicit-db-reference", matched=kw, crud_verbs=verbs)

    entity = _first(_ENTITIES, t)
    if entity and verbs:
        return Stage1Result(
            kind="entity_crud",
            reason=f"entity-crud:{entity}+{verbs[0]}",
            matched=entity,
            crud_verbs=verbs,
        )

    return Stage1Result(kind="general_chat", reason="general-chat", crud_verbs=verbs)
