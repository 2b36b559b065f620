"""Natural-language command grammar for directing characters.

Chat text is checked here before it reaches dialogue. A match yields either a
``DirectiveCommand`` (how a character should move) or a ``TaskCommand`` (a
queued errand). Anything else returns ``None`` and is treated as chat.

Examples::

    follow me until dusk
    Rook, keep distance
    go to the dock for 2 hours
    Mira, talk to Bram about the tide
    watch the market street at 9pm for 30 minutes
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable
import itertools
import re

from .clock import MINUTES_PER_DAY, Moment, duration_label, time_label
from .layout import clean_for_match, distance, find_area_like
from .world import TASK_QUEUE_LIMIT, Directive, NpcTask

if TYPE_CHECKING:
    from .world import Character, PlayerSession, World


DEFAULT_OBSERVE_MINUTES = 60
MIN_OBSERVE_MINUTES = 10
MAX_OBSERVE_MINUTES = 360

TIME_WORDS = {
    "dawn": 6 * 60,
    "morning": 8 * 60,
    "noon": 12 * 60,
    "midday": 12 * 60,
    "afternoon": 15 * 60,
    "dusk": 16 * 60,
    "evening": 18 * 60,
    "night": 20 * 60,
    "midnight": 0,
}

_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(am|pm)?$")
_DURATION_RE = re.compile(
    r"\bfor\s+(an?|\d+(?:\.\d+)?|half an?)\s*(hours?|hrs?|h|minutes?|mins?|m)\b"
)
_UNTIL_RE = re.compile(r"\buntil\s+(.+?)\s*$")
_AT_RE = re.compile(r"\bat\s+(dawn|morning|noon|midday|afternoon|dusk|evening|night|midnight|\d{1,2}(?::\d{2})?\s*(?:am|pm)?)\b")
_ADDRESS_RE = re.compile(r"^(?:hey\s+)?([a-z][a-z ]{1,30}?)\s*[,:]\s*(.+)$")
_TALK_RE = re.compile(r"^(?:go\s+)?(?:talk|speak|chat)\s+(?:to|with)\s+(.+?)\s+about\s+(.+)$")
_OBSERVE_RE = re.compile(r"^(observe|watch|check(?:\s+on)?|patrol)\s+(.+)$")
_GO_RE = re.compile(r"^(?:go|move|head|walk)\s+(?:over\s+)?to\s+(.+)$")
_OBSERVATION_QUESTION_RE = re.compile(
    r"\b(what did you (?:see|notice|find)|what happened there|who was there|how did .* look|give me your report)\b"
)
_OBSERVATION_HINT_RE = re.compile(r"\b(saw|see|noticed|observe|observed|report|there)\b")


@dataclass(frozen=True)
class DirectiveCommand:
    mode: str
    npc_name: str | None = None
    area: str | None = None
    until: Moment | None = None
    to_home: bool = False
    label: str = ""


@dataclass(frozen=True)
class TaskCommand:
    kind: str
    npc_name: str | None = None
    target_name: str | None = None
    topic: str = ""
    area: str | None = None
    start_at: Moment | None = None
    duration_minutes: int = DEFAULT_OBSERVE_MINUTES


def parse_time_of_day(raw: str) -> int | None:
    """Minute-of-day for ``dusk``, ``9pm``, ``21:30``, ``7:15 am``."""
    text = str(raw or "").strip().lower().rstrip(".!?")
    if text in TIME_WORDS:
        return TIME_WORDS[text]
    match = _TIME_RE.match(text)
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    suffix = match.group(3)
    if minute >= 60:
        return None
    if suffix:
        if not 1 <= hour <= 12:
            return None
        hour = hour % 12 + (12 if suffix == "pm" else 0)
    elif hour > 23:
        return None
    return hour * 60 + minute


def parse_duration(text: str) -> int | None:
    match = _DURATION_RE.search(text)
    if not match:
        return None
    amount_raw, unit = match.group(1), match.group(2)
    if amount_raw.startswith("half"):
        amount = 0.5
    elif amount_raw in ("a", "an"):
        amount = 1.0
    else:
        amount = float(amount_raw)
    minutes = amount * 60 if unit.startswith("h") else amount
    return max(1, int(round(minutes)))


def next_occurrence(now: Moment, minute_of_day: int) -> Moment:
    """The next time the clock shows ``minute_of_day``; today if still ahead."""
    candidate = Moment(day=now.day, minute=minute_of_day % MINUTES_PER_DAY)
    if candidate.to_absolute() <= now.to_absolute():
        return Moment(day=now.day + 1, minute=candidate.minute)
    return candidate


def _strip_clauses(text: str) -> str:
    text = _DURATION_RE.sub("", text)
    text = _AT_RE.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


def _split_address(text: str, names: Iterable[str]) -> tuple[str | None, str]:
    match = _ADDRESS_RE.match(text)
    if not match:
        return None, text
    candidate = match.group(1).strip()
    if match_name(candidate, names) is None:
        return None, text
    return candidate, match.group(2).strip()


def match_name(raw: str | None, names: Iterable[str]) -> str | None:
    needle = clean_for_match(raw)
    if not needle:
        return None
    pool = list(names)
    for name in pool:
        if clean_for_match(name) == needle:
            return name
    for name in pool:
        tokens = clean_for_match(name).split()
        if needle in tokens:
            return name
    return None


def _area_name(raw: str) -> str | None:
    cleaned = re.sub(r"^(?:the|to the|to)\s+", "", clean_for_match(raw))
    area = find_area_like(cleaned)
    return area.name if area else None


def parse_command(text: str, now: Moment, npc_names: Iterable[str]) -> DirectiveCommand | TaskCommand | None:
    names = list(npc_names)
    raw = str(text or "").strip().lower().rstrip(".!")
    if not raw or raw.endswith("?"):
        return None
    addressee, body = _split_address(raw, names)
    duration = parse_duration(body)
    at_match = _AT_RE.search(body)
    at_minute = parse_time_of_day(at_match.group(1)) if at_match else None

    # -- tasks ---------------------------------------------------------------
    talk = _TALK_RE.match(body)
    if talk:
        target = match_name(talk.group(1), names)
        topic = talk.group(2).strip()[:120]
        if target and topic:
            return TaskCommand(kind="talk_to_npc", npc_name=addressee, target_name=target, topic=topic)

    observe = _OBSERVE_RE.match(body)
    if observe:
        verb = observe.group(1)
        where = _strip_clauses(observe.group(2))
        anywhere = where in ("anywhere", "around", "around town")
        area = None if anywhere else _area_name(where)
        is_task = verb != "patrol" or at_minute is not None
        if (area or anywhere) and is_task:
            minutes = duration if duration is not None else DEFAULT_OBSERVE_MINUTES
            return TaskCommand(
                kind="observe_area",
                npc_name=addressee,
                area=area,
                start_at=next_occurrence(now, at_minute) if at_minute is not None else None,
                duration_minutes=max(MIN_OBSERVE_MINUTES, min(MAX_OBSERVE_MINUTES, minutes)),
            )
        if area and verb == "patrol":
            return DirectiveCommand(
                mode="area",
                npc_name=addressee,
                area=area,
                until=now.plus(duration) if duration else None,
                label=f"patrol {area}",
            )

    # -- movement ------------------------------------------------------------
    if re.match(r"^(follow me|come with me)\b", body):
        until = None
        until_match = _UNTIL_RE.search(body)
        if until_match:
            minute = parse_time_of_day(until_match.group(1))
            if minute is not None:
                until = next_occurrence(now, minute)
        elif duration:
            until = now.plus(duration)
        return DirectiveCommand(mode="follow_player", npc_name=addressee, until=until, label="follow")
    if re.match(r"^(keep (your )?distance|stay back)\b", body):
        return DirectiveCommand(
            mode="keep_distance", npc_name=addressee, until=now.plus(duration) if duration else None, label="keep distance"
        )
    if re.match(r"^(return|go back) to (your )?(routine|work|day)\b", body):
        return DirectiveCommand(mode="routine", npc_name=addressee, label="routine")
    if re.match(r"^go (to )?my (house|home|farm)\b", body):
        return DirectiveCommand(mode="point", npc_name=addressee, to_home=True, label="my house")
    if re.match(r"^(stop|hold|wait|stay)( (here|there|put))?$", _strip_clauses(body)):
        return DirectiveCommand(mode="hold", npc_name=addressee, until=now.plus(duration) if duration else None, label="hold")
    go = _GO_RE.match(body)
    if go:
        area = _area_name(_strip_clauses(go.group(1)))
        if area:
            return DirectiveCommand(
                mode="area",
                npc_name=addressee,
                area=area,
                until=now.plus(duration) if duration else None,
                label=f"go to {area}",
            )
    return None


def is_observation_question(text: str) -> bool:
    lowered = str(text or "").strip().lower()
    if _OBSERVATION_QUESTION_RE.search(lowered):
        return True
    return bool(_OBSERVATION_HINT_RE.search(lowered)) and "?" in lowered


# -- applying commands -------------------------------------------------------

COMMAND_REACH = 95.0
_task_counter = itertools.count(1)


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    message: str
    npc_id: str | None = None


def find_character(world: "World", name: str | None) -> "Character | None":
    match = match_name(name, [character.name for character in world.characters.values()])
    if match is None:
        return None
    for character in world.characters.values():
        if character.name == match:
            return character
    return None


def nearest_character(world: "World", player: "PlayerSession", reach: float = COMMAND_REACH) -> "Character | None":
    best = None
    best_gap = reach
    for character in world.characters.values():
        gap = distance(character.x, character.y, player.x, player.y)
        if gap <= best_gap:
            best, best_gap = character, gap
    return best


def _until_text(until: Moment | None) -> str:
    return f" until {time_label(until.minute)}" if until else ""


def _apply_directive(world: "World", player: "PlayerSession", character: "Character", command: DirectiveCommand) -> str:
    character.tasks = []
    character.hold_until = 0.0
    character.target_x = character.target_y = None
    if command.mode == "routine":
        character.directive = None
        return f"{character.name} returned to their normal routine."
    if command.mode == "point":
        farm = world.farm_for(player.player_id)
        character.directive = Directive(
            mode="point", issued_by=player.player_id, x=farm.home_x, y=farm.home_y, label="your house"
        )
        return f"{character.name} is heading to your house."
    if command.mode == "hold":
        character.directive = Directive(mode="hold", issued_by=player.player_id, until=command.until, label="hold")
        return f"{character.name} will hold position{_until_text(command.until)}."
    if command.mode in ("follow_player", "keep_distance"):
        character.directive = Directive(
            mode=command.mode,
            issued_by=player.player_id,
            target_player_id=player.player_id,
            until=command.until,
            label=command.label,
        )
        if command.mode == "follow_player":
            return f"{character.name} will follow you{_until_text(command.until)}."
        return f"{character.name} will keep some distance from you{_until_text(command.until)}."
    character.directive = Directive(
        mode="area", issued_by=player.player_id, area=command.area, until=command.until, label=command.label
    )
    verb = "will patrol" if command.label.startswith("patrol") else "is heading to"
    return f"{character.name} {verb} {command.area}{_until_text(command.until)}."


def _enqueue_task(world: "World", player: "PlayerSession", character: "Character", command: TaskCommand, now: float) -> CommandResult:
    if len(character.tasks) >= TASK_QUEUE_LIMIT:
        return CommandResult(ok=False, message=f"{character.name} is already busy with other requests.", npc_id=character.id)
    task = NpcTask(
        id=f"task_{int(now)}_{next(_task_counter)}",
        kind=command.kind,
        requested_by=player.player_id,
        requester_name=player.name,
        created_at=now,
    )
    if command.kind == "talk_to_npc":
        target = find_character(world, command.target_name)
        if target is None:
            return CommandResult(ok=False, message=f'Couldn\'t find "{command.target_name}" in town.', npc_id=character.id)
        if target.id == character.id:
            return CommandResult(ok=False, message=f"{character.name} cannot be asked to talk to themselves.", npc_id=character.id)
        task.target_npc_id = target.id
        task.topic = command.topic
        character.tasks.append(task)
        return CommandResult(
            ok=True, message=f'{character.name} will talk to {target.name} about "{task.topic}". I\'ll report back.', npc_id=character.id
        )
    task.area = command.area
    task.start_at = command.start_at
    task.duration_minutes = command.duration_minutes
    character.tasks.append(task)
    when = f" at {time_label(task.start_at.minute)}" if task.start_at else " now"
    where = task.area or "around town"
    return CommandResult(
        ok=True,
        message=f"{character.name} will observe {where}{when} for {duration_label(task.duration_minutes)}. I'll report back.",
        npc_id=character.id,
    )


def apply_command(
    world: "World",
    player: "PlayerSession",
    command: DirectiveCommand | TaskCommand,
    *,
    preferred_npc_id: str | None = None,
    now: float,
) -> CommandResult:
    """Route a parsed command to the addressed, preferred or nearest character."""
    character = None
    if command.npc_name:
        character = find_character(world, command.npc_name)
    if character is None and preferred_npc_id:
        character = world.characters.get(preferred_npc_id)
    if character is None:
        character = nearest_character(world, player)
    if character is None:
        return CommandResult(ok=False, message="No nearby NPC to command. Stand near someone first.")
    if isinstance(command, TaskCommand):
        return _enqueue_task(world, player, character, command, now)
    return CommandResult(ok=True, message=_apply_directive(world, player, character, command), npc_id=character.id)
