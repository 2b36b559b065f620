"""Line generator: every generated artifact the town needs, with offline heuristics.

Each method runs one policy task through ``PolicyTaskRunner``. When no provider
tier is configured (or all of them fail) the matching ``_heuristic_*`` function
answers instead, so callers always receive a draft dict. Drafts are loosely
typed on purpose; the sim modules normalize them before use.
"""

from __future__ import annotations

from hashlib import sha256
from typing import Any, Callable

from packages.lantern_core.llm.task_runner import PolicyTaskRunner

from .farm import CROPS
from .layout import AREA_NAMES, ROLE_NAMES


PolicyLookup = Callable[[str], Any]
LogSink = Callable[[dict[str, Any]], None]

LINE_WORD_LIMIT = 14

POSITIVE_WORDS = ("thank", "thanks", "help", "glad", "friend", "kind", "promise", "sorry", "appreciate", "welcome")
NEGATIVE_WORDS = ("liar", "hate", "thief", "fool", "never", "useless", "shut up", "threat", "cheat", "leave me")
PROMISE_WORDS = ("i promise", "i will", "i'll", "you have my word", "count on me")
APOLOGY_WORDS = ("sorry", "apologize", "apologise", "forgive me", "my fault")
REQUEST_WORDS = ("could you", "can you", "would you", "please", "help me")
RESOLVED_WORDS = ("resolved", "kept", "fulfilled", "made good", "forgave", "forgiven", "apology accepted", "promise kept")

ROLE_LINES: dict[str, tuple[str, ...]] = {
    "Businessman": ("Coin moves faster than gossip, friend.", "Every rumor has a price on it.", "Trade is slow when people are scared."),
    "Politician": ("The square needs calm heads today.", "I hear every complaint in this town eventually.", "Votes follow whoever keeps the lanterns lit."),
    "Fisherman": ("Tide was strange this morning.", "The nets came up heavy and quiet.", "Fog rolls in off the water when trouble's near."),
    "Shop Owner": ("Shelves are half empty, but smiles are free.", "Fresh turnips sell before noon.", "Come by the stall, I'll set something aside."),
    "Artist": ("I keep painting that shrine light.", "The colors in the square feel restless.", "Everyone here is a story waiting for a frame."),
    "Religious Devotee": ("The sanctum doors are open to all.", "Prayers are louder when the lantern flickers.", "Walk gently near the shrine."),
    "Cultist": ("The lantern chooses who sees it.", "The forest keeps older promises than the square.", "Not everyone should walk the shrine path."),
    "Town Guard": ("Keep your eyes open after dusk.", "I walk this square twice an hour.", "Report anything odd near the forest."),
    "Herbalist": ("The forest gives what you respect.", "Mint for nerves, sage for sleep.", "I found fresh tracks by the shrine."),
    "Blacksmith": ("Steel doesn't lie, people do.", "The forge has been busy with latches lately.", "Bring me iron and I'll make it useful."),
}
TOPIC_OPENERS = ("About {topic}: ", "You asked about {topic}. ", "On {topic}, ")
EMOTIONS = ("calm", "curious", "wary", "warm", "thoughtful")


def _hash_int(value: str) -> int:
    return int(sha256(value.encode("utf-8")).hexdigest()[:8], 16)


def shorten_line(text: str, limit: int = LINE_WORD_LIMIT) -> str:
    words = str(text or "").split()
    if len(words) <= limit:
        return " ".join(words)
    return " ".join(words[:limit]) + "..."


def _any_word(text: str, words: tuple[str, ...]) -> bool:
    lowered = str(text or "").lower()
    return any(word in lowered for word in words)


def _heuristic_npc_line(context: dict[str, Any]) -> dict[str, Any]:
    speaker = context.get("speaker") or {}
    target = context.get("target") or {}
    role = str(speaker.get("role") or "")
    seed = f"{speaker.get('id')}:{target.get('id')}:{context.get('turn')}:{context.get('minute')}"
    lines = ROLE_LINES.get(role) or ("Quiet day in town.",)
    line = lines[_hash_int(seed) % len(lines)]
    topic = str(context.get("topic_hint") or "").strip()
    player_text = str(context.get("player_text") or "").strip()
    if topic:
        short_topic = " ".join(topic.split()[:4])
        line = TOPIC_OPENERS[_hash_int(topic) % len(TOPIC_OPENERS)].format(topic=short_topic) + line
    elif player_text and player_text.endswith("?"):
        line = "Hard to say. " + line
    relation = int(context.get("relation_score") or 0)
    if relation <= -5:
        emotion = "cold"
    elif relation >= 5:
        emotion = "warm"
    else:
        emotion = EMOTIONS[_hash_int(seed + ":e") % len(EMOTIONS)]
    return {
        "line": line,
        "emotion": emotion,
        "memory_note": f"{speaker.get('name', 'Someone')} spoke with {target.get('name', 'someone')}.",
    }


def _heuristic_relationship_shift(context: dict[str, Any]) -> dict[str, Any]:
    text = str(context.get("text") or "")
    delta = 0
    if _any_word(text, POSITIVE_WORDS):
        delta += 1
    if _any_word(text, NEGATIVE_WORDS):
        delta -= 1
    rationale = "friendly words" if delta > 0 else "harsh words" if delta < 0 else "small talk"
    return {"delta": delta, "rationale": rationale}


def _heuristic_memory_classification(context: dict[str, Any]) -> dict[str, Any]:
    text = str(context.get("text") or "")
    if _any_word(text, PROMISE_WORDS):
        category = "promise"
    elif _any_word(text, APOLOGY_WORDS):
        category = "apology"
    elif _any_word(text, REQUEST_WORDS):
        category = "request"
    else:
        category = "none"
    return {"category": category, "resolved": _any_word(text, RESOLVED_WORDS)}


def _heuristic_followup_hint(context: dict[str, Any]) -> dict[str, Any]:
    player = str(context.get("player_name") or "the traveler")
    threads = [str(t) for t in context.get("prioritized_threads") or [] if t]
    memories = [str(m) for m in context.get("recent_player_memories") or [] if m]
    town_log = [str(line) for line in context.get("town_log") or [] if line]
    if threads:
        hint = f"Ask {player} about this: {threads[0]}"
    elif memories:
        hint = f"Remember talking with {player}: {memories[0]}"
    elif town_log:
        hint = f"Mention to {player} that {town_log[-1]}"
    else:
        hint = ""
    return {"hint": hint[:140]}


def _heuristic_dynamic_mission(context: dict[str, Any]) -> dict[str, Any]:
    signals = context.get("quest_signals") or {}
    urgency = int(signals.get("urgency") or 1)
    hot_role = str(signals.get("hot_role") or "")
    hot_area = str(signals.get("hot_area") or "")
    player_id = str(context.get("player_id") or "")
    completed = int(context.get("completed_dynamic") or 0)
    if hot_role and completed % 2 == 0:
        return {
            "title": f"Word with the {hot_role}"[:60],
            "description": f"People keep mentioning the {hot_role.lower()}. Hear their side.",
            "objective_type": "talk_role",
            "target_role": hot_role,
            "urgency": urgency,
            "why_now": "The town log keeps circling back to them.",
        }
    if hot_area:
        return {
            "title": f"Check on {hot_area}"[:60],
            "description": f"Something is stirring around {hot_area}. Go see for yourself.",
            "objective_type": "visit_area",
            "target_area": hot_area,
            "urgency": urgency,
            "why_now": "Rumors point there.",
        }
    options = ("harvest_count", "visit_unique_areas", "talk_unique_npcs")
    kind = options[_hash_int(f"{player_id}:{completed}") % len(options)]
    titles = {
        "harvest_count": ("Stock the Stalls", "The market could use fresh produce."),
        "visit_unique_areas": ("Evening Rounds", "Walk the town and see who is out."),
        "talk_unique_npcs": ("Catch Up", "Check in with a few neighbours."),
    }
    title, description = titles[kind]
    return {"title": title, "description": description, "objective_type": kind, "target_count": 2 + completed % 2, "urgency": urgency}


def _heuristic_town_mission(context: dict[str, Any]) -> dict[str, Any]:
    day = int(context.get("day") or 1)
    logs = [str(line) for line in context.get("town_log") or [] if line]
    areas = list(context.get("area_names") or AREA_NAMES)
    roles = list(context.get("role_names") or ROLE_NAMES)
    kinds = ("talk_to_any_npc", "visit_area", "talk_to_role", "harvest_any")
    kind = kinds[_hash_int(f"town:{day}") % len(kinds)]
    area = areas[_hash_int(f"area:{day}") % len(areas)]
    role = roles[_hash_int(f"role:{day}") % len(roles)]
    gossip = f"Folks are still talking: {logs[-1]}" if logs else f"Word is the {role.lower()} saw lights near {area}."
    drafts = {
        "talk_to_any_npc": ("Town Chatter", "Swap stories with a few townsfolk.", {"target_count": 3}),
        "visit_area": (f"Eyes on {area}", f"Someone should look around {area} today.", {"target_area": area}),
        "talk_to_role": (f"Ask the {role}", f"The {role.lower()} may know more than they let on.", {"target_role": role, "target_count": 1}),
        "harvest_any": ("Market Day", "Bring in a harvest for the market stalls.", {"target_count": 2}),
    }
    title, description, extra = drafts[kind]
    return {"title": title, "description": description, "objective_type": kind, "gossip": gossip[:180], **extra}


STORY_ARC_BANK: tuple[dict[str, Any], ...] = (
    {
        "title": "The Shrine Lantern",
        "stages": [
            "Strange lights flicker near the forest shrine.",
            "Townsfolk argue over who lit the lantern.",
            "The watch and the shrine keepers demand answers.",
        ],
        "branches": [
            "The town relights the lantern together and the square celebrates.",
            "The lantern goes dark and its secret stays buried in the forest.",
        ],
    },
    {
        "title": "Empty Nets",
        "stages": [
            "The fishing boats return with half-empty nets.",
            "Prices climb at the market and tempers with them.",
            "Someone is seen cutting lines at the Dock at night.",
            "The town must decide who to trust with the harbor.",
        ],
        "branches": [
            "Neighbours share their stores and the Dock recovers.",
            "The harbor falls quiet and the culprit slips away.",
        ],
    },
    {
        "title": "The Forge Ledger",
        "stages": [
            "Doran's forge takes an order for a hundred latches.",
            "Nobody will say who paid for them.",
            "Locks appear on the sanctum doors overnight.",
        ],
        "branches": [
            "The ledger is read aloud in the square and the doors reopen.",
            "The ledger burns and the locks stay.",
        ],
    },
)


def _heuristic_story_arc(context: dict[str, Any]) -> dict[str, Any]:
    day = int(context.get("day") or 1)
    return dict(STORY_ARC_BANK[_hash_int(f"arc:{day}") % len(STORY_ARC_BANK)])


def _heuristic_economy_plan(context: dict[str, Any]) -> dict[str, Any]:
    day = int(context.get("day") or 1)
    weather = str(context.get("weather") or "clear")
    prices: dict[str, int] = {}
    demand: dict[str, str] = {}
    for key, crop in CROPS.items():
        swing = (_hash_int(f"price:{day}:{key}") % 41 - 20) / 100.0
        if weather == "rain":
            swing += 0.1
        prices[key] = max(1, int(round(crop.sell_price * (1 + swing))))
        demand[key] = "high" if swing > 0.1 else "low" if swing < -0.1 else "normal"
    highs = sum(1 for tier in demand.values() if tier == "high")
    multiplier = round(1.0 + 0.05 * highs, 2)
    return {
        "prices": prices,
        "demand": demand,
        "reward_multiplier": multiplier,
        "note": "Rain keeps the carts slow." if weather == "rain" else "Market is steady.",
    }


WORLD_EVENT_BANK: tuple[tuple[str, str, str], ...] = (
    ("Sudden squall", "Dark clouds roll in off the water.", "weather_shift"),
    ("Short supply", "A cart of seed never arrived.", "price_spike"),
    ("Lights in the trees", "Someone saw lantern light deep in the forest.", "guard_alert"),
    ("Street musicians", "A pair of travelling players set up for the day.", "none"),
)


def _heuristic_world_events(context: dict[str, Any]) -> dict[str, Any]:
    day = int(context.get("day") or 1)
    hot_area = str((context.get("rumor_heat") or {}).get("area") or "")
    count = _hash_int(f"events:{day}") % 3
    events = []
    for idx in range(count):
        title, description, effect = WORLD_EVENT_BANK[_hash_int(f"event:{day}:{idx}") % len(WORLD_EVENT_BANK)]
        if any(event["title"] == title for event in events):
            continue
        area = hot_area or AREA_NAMES[_hash_int(f"event_area:{day}:{idx}") % len(AREA_NAMES)]
        events.append({"title": title, "description": description, "area": area, "severity": 1 + idx % 2, "effect": effect})
    return {"events": events}


def _heuristic_faction_pulse(context: dict[str, Any]) -> dict[str, Any]:
    factions = (context.get("factions") or {}).get("factions") or []
    role_heat = (context.get("role_heat") or {})
    member_roles = context.get("member_roles") or {}
    out = []
    for faction in factions:
        members = faction.get("members") or []
        heat = sum(int(role_heat.get(member_roles.get(member, ""), 0)) for member in members)
        drift = 5 if heat >= 12 else -3 if heat == 0 else 0
        out.append({"name": faction.get("name"), "influence": int(faction.get("influence") or 50) + drift})
    tensions = []
    if int(role_heat.get("Cultist", 0)) >= 12:
        tensions.append({"a": "Lantern Circle", "b": "Shrine Circle", "value": 80})
        tensions.append({"a": "Lantern Circle", "b": "Civic Watch", "value": 75})
    return {"factions": out, "tensions": tensions}


def _heuristic_routine_nudges(context: dict[str, Any]) -> dict[str, Any]:
    weather = str(context.get("weather") or "clear")
    hot_area = str((context.get("rumor_heat") or {}).get("area") or "")
    nudges = []
    if weather == "rain":
        nudges.append({"role": "Fisherman", "shift_minutes": 60, "note": "waiting out the rain"})
        nudges.append({"role": "Shop Owner", "shift_minutes": -30, "venue": "Housing", "note": "closing early"})
    if hot_area:
        nudges.append({"role": "Town Guard", "shift_minutes": 0, "venue": hot_area, "note": f"extra rounds near {hot_area}"})
        nudges.append({"role": "Artist", "shift_minutes": 30, "venue": hot_area, "note": "chasing the story"})
    return {"nudges": nudges}


class LineGenerator:
    """Town-facing facade over the policy task runner."""

    def __init__(
        self,
        *,
        policy_lookup: PolicyLookup | None = None,
        log_sink: LogSink | None = None,
        provider_invoker: Callable[..., Any] | None = None,
        runner: PolicyTaskRunner | None = None,
    ) -> None:
        self._runner = runner or PolicyTaskRunner(
            policy_lookup=policy_lookup,
            log_sink=log_sink,
            provider_invoker=provider_invoker,
        )

    def _run_task(
        self,
        *,
        task_name: str,
        context: dict[str, Any],
        heuristic_fn: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any]:
        result = self._runner.run(
            task_name=task_name,
            scope=str(context.get("scope") or "") or None,
            subject_id=str(context.get("subject_id") or "") or None,
            context=context,
            heuristic_fn=heuristic_fn,
        )
        output = dict(result.output)
        output["route"] = result.route
        output["used_tier"] = result.used_tier
        return output

    def generate_line(self, context: dict[str, Any]) -> dict[str, Any]:
        """Next spoken line: ``{line, emotion, memory_note}`` with the line shortened."""
        output = self._run_task(task_name="npc_line", context=context, heuristic_fn=_heuristic_npc_line)
        line = shorten_line(str(output.get("line") or "").strip())
        if not line:
            line = shorten_line(_heuristic_npc_line(context)["line"])
        output["line"] = line
        output["emotion"] = str(output.get("emotion") or "calm")[:24]
        output["memory_note"] = str(output.get("memory_note") or "")[:200]
        return output

    def assess_relationship_shift(self, context: dict[str, Any]) -> dict[str, Any]:
        output = self._run_task(task_name="relationship_shift", context=context, heuristic_fn=_heuristic_relationship_shift)
        try:
            delta = int(round(float(output.get("delta") or 0)))
        except (TypeError, ValueError):
            delta = 0
        return {"delta": max(-2, min(2, delta)), "rationale": str(output.get("rationale") or "")[:140]}

    def classify_memory(self, context: dict[str, Any]) -> dict[str, Any]:
        output = self._run_task(
            task_name="memory_classification", context=context, heuristic_fn=_heuristic_memory_classification
        )
        category = str(output.get("category") or "none").strip().lower()
        if category not in ("promise", "apology", "request", "none"):
            category = "none"
        return {"category": category, "resolved": bool(output.get("resolved"))}

    def generate_followup(self, context: dict[str, Any]) -> str:
        output = self._run_task(task_name="followup_hint", context=context, heuristic_fn=_heuristic_followup_hint)
        return str(output.get("hint") or "").strip()[:140]

    def generate_dynamic_mission(self, context: dict[str, Any]) -> dict[str, Any]:
        return self._run_task(task_name="dynamic_mission", context=context, heuristic_fn=_heuristic_dynamic_mission)

    def generate_town_mission(self, context: dict[str, Any]) -> dict[str, Any]:
        return self._run_task(task_name="town_mission", context=context, heuristic_fn=_heuristic_town_mission)

    def generate_story_arc(self, context: dict[str, Any]) -> dict[str, Any]:
        return self._run_task(task_name="story_arc", context=context, heuristic_fn=_heuristic_story_arc)

    def generate_economy_plan(self, context: dict[str, Any]) -> dict[str, Any]:
        return self._run_task(task_name="economy_plan", context=context, heuristic_fn=_heuristic_economy_plan)

    def generate_world_events(self, context: dict[str, Any]) -> dict[str, Any]:
        return self._run_task(task_name="world_events", context=context, heuristic_fn=_heuristic_world_events)

    def generate_faction_pulse(self, context: dict[str, Any]) -> dict[str, Any]:
        return self._run_task(task_name="faction_pulse", context=context, heuristic_fn=_heuristic_faction_pulse)

    def generate_routine_nudges(self, context: dict[str, Any]) -> dict[str, Any]:
        return self._run_task(task_name="routine_nudges", context=context, heuristic_fn=_heuristic_routine_nudges)
