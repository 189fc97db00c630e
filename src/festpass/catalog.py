"""Static festival event catalog and event-name normalization.

The catalog is a closed set: ``EventName`` enumerates every event and
``normalize_event_name`` maps free-form input onto it or raises
``UnknownEventError``.  There is no pass-through of unrecognised names.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from festpass.errors import UnknownEventError
from festpass.models import EventCategory


class EventName(str, Enum):
    # Exception events
    GROUP_DANCE = "Group Dance"
    CRICKET = "Cricket"
    FASHION_SHOW = "Fashion Show"
    # Other group events
    GROUP_SINGING = "Group Singing"
    SKIT_PLAY = "Skit Play"
    INSTRUMENTAL = "Instrumental"
    FACE_PAINTING = "Face Painting"
    BEST_OUT_OF_WASTE = "Best out of Waste"
    CLAY_MODELING = "Clay Modeling"
    MEHENDI = "Mehendi"
    DESIGNING = "Designing"
    MYSTERY_BOX = "Mystery Box"
    DUMB_CHARADES = "Dumb Charades"
    QUIZ = "Quiz"
    # Solo events
    SOLO_DANCE = "Solo Dance"
    SOLO_SINGING = "Solo Singing"
    CANVA_PAINTING = "Canva Painting"
    PENCIL_SKETCH = "Pencil Sketch"
    PHOTOGRAPHY = "Photography"
    VIDEOGRAPHY = "Videography"
    SHORT_MOVIE = "Short Movie"
    REEL_MAKING = "Reel Making"
    DEBATE = "Debate"
    EXTEMPORE = "Extempore"
    RANGOLI = "Rangoli"


@dataclass(frozen=True)
class EventDefinition:
    name: EventName
    category: EventCategory
    min_participants: int
    max_participants: int
    is_exception: bool = False
    summary: str = ""
    day: str = ""
    time: str = ""
    venue: str = ""

    @property
    def fixed_size(self) -> bool:
        return self.min_participants == self.max_participants

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name.value,
            "category": self.category.value,
            "min_participants": self.min_participants,
            "max_participants": self.max_participants,
            "is_exception": self.is_exception,
            "summary": self.summary,
            "schedule": {"day": self.day, "time": self.time, "venue": self.venue},
        }


def _group(name, lo, hi, summary, day, time, venue, *, exception=False):
    return EventDefinition(name, EventCategory.GROUP, lo, hi, exception, summary, day, time, venue)


def _solo(name, summary, day, time, venue):
    return EventDefinition(name, EventCategory.SOLO, 1, 1, False, summary, day, time, venue)


_DEFINITIONS: tuple[EventDefinition, ...] = (
    _group(EventName.GROUP_DANCE, 6, 12,
           "High-energy choreography performed by large crews with dramatic staging.",
           "Day 2", "5:00 PM", "Main Auditorium", exception=True),
    _group(EventName.CRICKET, 11, 15,
           "Short-format cricket tournament with knockout finals under floodlights.",
           "Day 2", "9:00 AM", "Main Ground", exception=True),
    _group(EventName.FASHION_SHOW, 4, 12,
           "Runway spectacle celebrating futurism with couture styling and storytelling.",
           "Day 2", "7:00 PM", "Main Auditorium", exception=True),
    _group(EventName.GROUP_SINGING, 4, 10,
           "Choir ensembles harmonize across genres with live accompaniment.",
           "Day 1", "12:30 PM", "Open Air Theatre"),
    _group(EventName.SKIT_PLAY, 6, 8,
           "Theatrical short plays with strong narratives and quick set transitions.",
           "Day 1", "3:00 PM", "Auditorium Studio"),
    _group(EventName.INSTRUMENTAL, 1, 5,
           "Bands and soloists showcase live instrumental arrangements.",
           "Day 1", "5:30 PM", "Music Hall"),
    _group(EventName.FACE_PAINTING, 2, 2,
           "Duos craft futuristic looks blending art and storytelling.",
           "Day 2", "1:30 PM", "Design Studio"),
    _group(EventName.BEST_OUT_OF_WASTE, 2, 2,
           "Teams upcycle materials into functional art pieces.",
           "Day 2", "11:30 AM", "Makers Lab"),
    _group(EventName.CLAY_MODELING, 2, 2,
           "Sculptors shape thematic clay artefacts live.",
           "Day 2", "4:30 PM", "Art Block"),
    _group(EventName.MEHENDI, 2, 2,
           "Intricate henna artistry inspired by cultural motifs.",
           "Day 2", "2:30 PM", "Cultural Court"),
    _group(EventName.DESIGNING, 2, 2,
           "Rapid prototyping challenge for futuristic product design.",
           "Day 2", "3:30 PM", "Innovation Hub"),
    _group(EventName.MYSTERY_BOX, 2, 2,
           "Creative build-off where teams transform surprise materials.",
           "Day 2", "12:30 PM", "Makers Lab"),
    _group(EventName.DUMB_CHARADES, 3, 5,
           "Guessing frenzy with cinematic and tech-themed prompts.",
           "Day 1", "4:30 PM", "Student Commons"),
    _group(EventName.QUIZ, 2, 2,
           "Two-member teams battle through tech and culture trivia.",
           "Day 1", "2:30 PM", "Seminar Hall"),
    _solo(EventName.SOLO_DANCE,
          "Spotlight performances blending classical and freestyle moves.",
          "Day 1", "11:30 AM", "Main Auditorium"),
    _solo(EventName.SOLO_SINGING,
          "Vocalists perform prepared solo numbers with live judging.",
          "Day 1", "12:00 PM", "Main Auditorium"),
    _solo(EventName.CANVA_PAINTING,
          "Digital illustration sprint themed around technology and culture.",
          "Day 2", "10:00 AM", "Design Studio"),
    _solo(EventName.PENCIL_SKETCH,
          "Artists capture live inspirations using graphite mediums.",
          "Day 1", "2:00 PM", "Art Block"),
    _solo(EventName.PHOTOGRAPHY,
          "Campus photowalk chronicling the spirit of the festival.",
          "Day 1", "9:00 AM", "Campus Grounds"),
    _solo(EventName.VIDEOGRAPHY,
          "Filmmakers craft short narratives in a timed shoot-and-edit challenge.",
          "Day 1", "10:00 AM", "Media Lab"),
    _solo(EventName.SHORT_MOVIE,
          "Screening of short films produced ahead of the fest with live critique.",
          "Day 2", "11:00 AM", "Screening Room"),
    _solo(EventName.REEL_MAKING,
          "Content creators produce trending reels in a themed creative sprint.",
          "Day 2", "12:00 PM", "Media Lab"),
    _solo(EventName.DEBATE,
          "Contestants argue futuristic topics with structured rebuttals.",
          "Day 1", "1:30 PM", "Seminar Hall"),
    _solo(EventName.EXTEMPORE,
          "Think-on-your-feet speeches delivered on surprise themes.",
          "Day 1", "2:00 PM", "Seminar Hall"),
    _solo(EventName.RANGOLI,
          "Floor art installations inspired by tradition and neon futurism.",
          "Day 2", "5:30 PM", "Cultural Court"),
)

CATALOG: dict[EventName, EventDefinition] = {d.name: d for d in _DEFINITIONS}

EXCEPTION_EVENTS: tuple[EventName, ...] = tuple(d.name for d in _DEFINITIONS if d.is_exception)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def _fold(raw: str) -> str:
    return _NON_ALNUM.sub("", raw.lower())


# Spellings seen in submitted forms that do not fold onto a canonical name.
_EXTRA_ALIASES: dict[str, EventName] = {
    "skit": EventName.SKIT_PLAY,
    "skitandplay": EventName.SKIT_PLAY,
    "canvaspainting": EventName.CANVA_PAINTING,
    "canvas": EventName.CANVA_PAINTING,
    "reels": EventName.REEL_MAKING,
    "reel": EventName.REEL_MAKING,
    "reelsmaking": EventName.REEL_MAKING,
    "dumbcharade": EventName.DUMB_CHARADES,
    "claymodelling": EventName.CLAY_MODELING,
    "mehndi": EventName.MEHENDI,
    "mehandi": EventName.MEHENDI,
    "extempore": EventName.EXTEMPORE,
    "extempo": EventName.EXTEMPORE,
    "shortfilm": EventName.SHORT_MOVIE,
}

_LOOKUP: dict[str, EventName] = {_fold(name.value): name for name in EventName}
_LOOKUP.update(_EXTRA_ALIASES)


def normalize_event_name(raw: Any) -> EventName:
    """Map *raw* onto a canonical ``EventName``.

    Matching ignores case, whitespace, hyphens and punctuation.  Raises
    ``UnknownEventError`` when nothing matches.
    """
    if isinstance(raw, EventName):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        raise UnknownEventError(str(raw))
    name = _LOOKUP.get(_fold(raw))
    if name is None:
        raise UnknownEventError(raw)
    return name


def get_definition(name: EventName | str) -> EventDefinition:
    return CATALOG[normalize_event_name(name)]


def list_events(*, category: str | None = None) -> list[EventDefinition]:
    """Catalog entries in declaration order, optionally filtered.

    *category* accepts ``"solo"``, ``"group"`` or ``"exception"``.
    """
    if category is None:
        return list(_DEFINITIONS)
    if category == "exception":
        return [d for d in _DEFINITIONS if d.is_exception]
    return [d for d in _DEFINITIONS if d.category.value == category]
