"""Dialogue orchestration: player conversations and autonomous NPC chatter.

A player conversation is a small state machine held on ``DialogueState``:
a line is generated, split into chunks, delivered one chunk per interaction,
and then the session waits for exactly one chat reply anchored at the player's
position. Walking away from the anchor ends the conversation.

NPC-NPC conversations run as a background task that holds a single global
flag and polls a ``CancellationToken`` between turns.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable
import asyncio
import json
import logging
import random
import time

from packages.lantern_core.llm.gate import CooldownGate, TtlCache

from .daily_refresh import world_context
from .followup import compact_memory_lines, compose_continuity_hint, daily_followup_hint
from .layout import area_mention, distance
from .memory import MemoryRecord, MemoryStore, make_record, rank_memories
from .relations import (
    GRUDGE_THRESHOLD,
    apply_reputation_delta,
    bump_relation,
    relation_hints,
    relation_label,
    relation_score,
)
from .social_state import push_town_event

if TYPE_CHECKING:
    from .generator import LineGenerator
    from .world import Character, PlayerSession, World


logger = logging.getLogger("lantern_core.dialogue")

CHUNK_THRESHOLD_WORDS = 16
CHUNK_WORDS = 12
ANCHOR_THRESHOLD = 2.0
PLAYER_NEAR_DISTANCE = 75.0
PAIR_DISTANCE = 110.0
TALK_COOLDOWN_SECONDS = 30.0
AUTO_DIALOGUE_INTERVAL_SECONDS = 18.0
RELATIONSHIP_GATE_SECONDS = 18.0
TURN_DELAY_SECONDS = 5.0
MIN_TURNS = 2
MAX_TURNS = 3
PAIR_POOL = 5
FOLLOWUP_TTL_SECONDS = 24 * 3600.0

TOWN_LIFE_TOPICS = (
    "the weather over the harbor",
    "prices at the market stalls",
    "the lantern near the forest shrine",
    "who was seen in the square last night",
    "the harvest this season",
    "repairs at the forge",
    "an old festival everyone misses",
    "strangers passing through town",
)

OBSERVATION_FLAVOR = {
    "observant": "I kept close track of little shifts in mood.",
    "curious": "I watched longer than needed, chasing little details.",
    "vigilant": "I checked corners and movement patterns carefully.",
    "dramatic": "The scene had a strong mood, hard to ignore.",
}
AREA_LOOKS = {
    "Town Square": "The square looked {mood}, with banners and cobbles catching the light.",
    "Market Street": "Stalls and awnings looked {mood}, colors shifting with passing shadows.",
    "Dock": "The docks looked {mood}, timber dark against the water.",
    "Sanctum": "The sanctum looked {mood}, pale stone holding a calm glow.",
    "Forest": "The forest edge looked {mood}, leaves moving in soft layers.",
    "Housing": "The homes looked {mood}, warm windows and tidy lanes.",
}


def split_into_chunks(text: str) -> list[str]:
    """Long lines become 12-word chunks; short lines stay whole."""
    words = str(text or "").split()
    if len(words) <= CHUNK_THRESHOLD_WORDS:
        return [" ".join(words)]
    return [" ".join(words[i : i + CHUNK_WORDS]) for i in range(0, len(words), CHUNK_WORDS)]


def intro_line(character: "Character") -> str:
    return f"Welcome. I'm {character.name}, the town's {character.role.lower()}."


def moved_off_anchor(player: "PlayerSession", x: float, y: float) -> bool:
    anchor_x = player.dialogue.anchor_x if player.dialogue.anchor_x is not None else player.x
    anchor_y = player.dialogue.anchor_y if player.dialogue.anchor_y is not None else player.y
    return distance(x, y, anchor_x, anchor_y) > ANCHOR_THRESHOLD


def dialogue_event(
    kind: str,
    *,
    speaker_id: str,
    speaker_name: str,
    target_id: str | None,
    target_name: str | None,
    text: str,
    x: float,
    y: float,
    time_label: str,
    emotion: str | None = None,
    needs_continue: bool = False,
    waiting_for_reply: bool = False,
    turn: int | None = None,
    turn_max: int | None = None,
) -> dict[str, Any]:
    return {
        "type": "dialogue_event",
        "kind": kind,
        "speaker_id": speaker_id,
        "speaker_name": speaker_name,
        "target_id": target_id,
        "target_name": target_name,
        "text": text,
        "emotion": emotion,
        "x": round(float(x), 1),
        "y": round(float(y), 1),
        "time_label": time_label,
        "needs_continue": needs_continue,
        "waiting_for_reply": waiting_for_reply,
        "turn": turn,
        "turn_max": turn_max,
    }


# -- observation reports ------------------------------------------------------


def crowd_label(count: int) -> str:
    if count <= 0:
        return "empty"
    if count <= 2:
        return "light"
    if count <= 4:
        return "steady"
    return "busy"


def area_look(area_name: str, minute: int, weather: str) -> str:
    hour = (int(minute) % 1440) // 60
    if hour < 6:
        mood = "quiet and dim"
    elif hour < 12:
        mood = "fresh and active"
    elif hour < 17:
        mood = "busy and sunlit"
    elif hour < 21:
        mood = "warm and lantern-lit"
    else:
        mood = "shadowy and hushed"
    if weather == "rain":
        sky = "Stones were slick with rain."
    elif weather == "storm":
        sky = "The wind made everything feel tense."
    else:
        sky = "Air felt steady and clear."
    template = AREA_LOOKS.get(area_name, "That place looked {mood}.")
    return f"{template.format(mood=mood)} {sky}"


def parse_observation_report(record: MemoryRecord) -> dict[str, Any] | None:
    if record.type != "observation_report" or not record.content:
        return None
    try:
        parsed = json.loads(record.content)
    except ValueError:
        return None
    if not isinstance(parsed, dict) or not parsed.get("area"):
        return None
    return parsed


def observation_reply_line(character: "Character", report: dict[str, Any]) -> str:
    people = [str(p) for p in report.get("people_seen") or []][:4]
    people_text = f"I spotted {', '.join(people)} there." if people else "I didn't spot anyone I could name there."
    look = str(report.get("look") or "").strip() or "Buildings looked ordinary, nothing damaged."
    if report.get("end_time") and report.get("end_day"):
        when = f"At {report['end_time']} on day {report['end_day']}"
    else:
        when = "When I watched"
    flavor = next((OBSERVATION_FLAVOR[t] for t in character.traits if t in OBSERVATION_FLAVOR), "I remember it clearly.")
    crowd = f"The place felt {report.get('crowd') or 'quiet'}."
    return f"{when}, in {report['area']}: {people_text} {crowd} {look} {flavor}"


# -- autonomous pairing ---------------------------------------------------------


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def _relation_weight(score: int) -> float:
    if score <= GRUDGE_THRESHOLD:
        return 0.2
    if score <= -4:
        return 0.6
    if score >= 6:
        return 1.4
    if score >= 3:
        return 1.2
    return 1.0


def _near_awake_player(world: "World", character: "Character") -> bool:
    return any(
        distance(character.x, character.y, player.x, player.y) <= PLAYER_NEAR_DISTANCE
        for player in world.awake_players()
    )


def candidate_pairs(world: "World", *, now: float) -> list[tuple["Character", "Character", float]]:
    eligible = [
        character
        for character in world.characters.values()
        if not character.on_cooldown(now) and _near_awake_player(world, character)
    ]
    pairs = []
    for i, a in enumerate(eligible):
        for b in eligible[i + 1 :]:
            gap = distance(a.x, a.y, b.x, b.y)
            if gap <= PAIR_DISTANCE:
                pairs.append((a, b, gap))
    return pairs


def pick_conversation_pair(
    world: "World", *, now: float, rng: random.Random | None = None
) -> tuple["Character", "Character"] | None:
    """Weighted pick among the five best nearby pairs.

    Pairs holding a grudge are dropped whenever a less hostile pair exists.
    """
    pairs = candidate_pairs(world, now=now)
    if not pairs:
        return None
    scored = [(a, b, gap, relation_score(world.relations, a.id, b.id)) for a, b, gap in pairs]
    civil = [row for row in scored if row[3] > GRUDGE_THRESHOLD]
    if civil:
        scored = civil
    ranked = sorted(scored, key=lambda row: -(_relation_weight(row[3]) * 100.0 / max(1.0, row[2])))
    a, b, _, _ = (rng or world.rng).choice(ranked[:PAIR_POOL])
    return a, b


# -- orchestrator -----------------------------------------------------------------


class EventSink:
    """Outgoing push channel. The API layer provides the real one."""

    async def to_session(self, session_id: str, payload: dict[str, Any]) -> None:
        return None

    async def broadcast(self, payload: dict[str, Any]) -> None:
        return None


class DialogueOrchestrator:
    def __init__(
        self,
        world: "World",
        store: MemoryStore,
        generator: "LineGenerator",
        sink: EventSink,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.world = world
        self.store = store
        self.generator = generator
        self.sink = sink
        self.clock = clock
        self.sleep = sleep
        self.relationship_gate = CooldownGate(max_keys=2048)
        self.followup_cache: TtlCache[str] = TtlCache(ttl_s=FOLLOWUP_TTL_SECONDS, max_entries=1024)
        self.conversation_active = False
        self.cancel_token: CancellationToken | None = None
        self.last_auto_at = 0.0

    def clear_caches(self) -> None:
        self.relationship_gate.clear()
        self.followup_cache.clear()

    # -- collaborators ------------------------------------------------------

    async def _write(self, owner_id: str, memory_type: str, content: str, *, importance: int, tags: list[str]) -> None:
        if not content:
            return
        record = make_record(owner_id, memory_type, content, importance=importance, tags=tags)
        try:
            await asyncio.to_thread(self.store.write_memory, record)
        except Exception as exc:
            logger.warning("[DIALOGUE] memory write failed for %s: %s", owner_id, exc)

    async def _recent(self, owner_id: str, limit: int = 4, focal: str = "") -> list[MemoryRecord]:
        try:
            rows = await asyncio.to_thread(self.store.recent_memories, owner_id, limit=limit * 3)
            return rank_memories(rows, focal, limit)
        except Exception as exc:
            logger.warning("[DIALOGUE] memory read failed for %s: %s", owner_id, exc)
            return []

    async def _by_tag(self, owner_id: str, tag: str, limit: int) -> list[MemoryRecord]:
        try:
            return await asyncio.to_thread(self.store.memories_by_tag, owner_id, tag, limit=limit)
        except Exception as exc:
            logger.warning("[DIALOGUE] tagged read failed for %s: %s", owner_id, exc)
            return []

    async def _generate_line(self, context: dict[str, Any]) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(self.generator.generate_line, context)
        except Exception as exc:
            logger.warning("[DIALOGUE] line generation failed: %s", exc)
            return {"line": "Hm. Let me think on that.", "emotion": "calm", "memory_note": ""}

    async def assess_shift(self, speaker: "Character", target_id: str, target_name: str, line: str, context_hint: str) -> dict[str, Any]:
        key = f"{speaker.id}|{target_id}|{context_hint}"
        if not self.relationship_gate.allow(key, RELATIONSHIP_GATE_SECONDS):
            return {"delta": 0, "rationale": "cooldown"}
        context = {
            "scope": f"day:{self.world.day}",
            "subject_id": speaker.id,
            "speaker": {"id": speaker.id, "name": speaker.name, "role": speaker.role},
            "target": {"id": target_id, "name": target_name},
            "text": line,
            "context_hint": context_hint,
        }
        try:
            return await asyncio.to_thread(self.generator.assess_relationship_shift, context)
        except Exception as exc:
            logger.warning("[DIALOGUE] relationship assessment failed: %s", exc)
            return {"delta": 0, "rationale": "unavailable"}

    def _line_context(
        self,
        speaker: "Character",
        target: dict[str, Any],
        memories: list[MemoryRecord],
        topic_hint: str,
        *,
        player_text: str = "",
        turn: int = 0,
    ) -> dict[str, Any]:
        return {
            "scope": f"day:{self.world.day}",
            "subject_id": speaker.id,
            "speaker": {
                "id": speaker.id,
                "name": speaker.name,
                "role": speaker.role,
                "traits": list(speaker.traits),
                "area": speaker.area,
            },
            "target": target,
            "world": world_context(self.world),
            "memories": compact_memory_lines(memories, 4),
            "topic_hint": topic_hint,
            "player_text": player_text,
            "relation_score": relation_score(self.world.relations, speaker.id, str(target.get("id") or "")),
            "turn": turn,
            "minute": self.world.minute,
        }

    @staticmethod
    def _player_target(player: "PlayerSession") -> dict[str, Any]:
        return {"id": player.player_id, "name": player.name, "role": "Visitor", "traits": []}

    async def continuity_hint(self, character: "Character", player: "PlayerSession") -> str:
        async def generate(context: dict[str, Any]) -> str:
            try:
                return await asyncio.to_thread(self.generator.generate_followup, context)
            except Exception as exc:
                logger.warning("[DIALOGUE] follow-up generation failed: %s", exc)
                return ""

        followup = await daily_followup_hint(
            cache=self.followup_cache,
            day=self.world.day,
            npc=character,
            player=player,
            memories_by_tag=self._by_tag,
            generate_followup=generate,
            world_context=world_context(self.world),
            town_log=list(self.world.yesterday_log)[-6:],
        )
        rows = await self._by_tag(character.id, f"player:{player.player_id}", 3)
        return compose_continuity_hint(followup, compact_memory_lines(rows, 3))

    def _social_hint(self, character: "Character") -> str:
        hints = relation_hints(self.world.relations, character.id, 2)
        return ", ".join(f"{row['other_id']}:{row['label']}" for row in hints) or "none"

    # -- player conversations -------------------------------------------------

    async def _deliver(self, player: "PlayerSession", character: "Character", line: str, emotion: str) -> None:
        state = player.dialogue
        chunks = split_into_chunks(line)
        first = chunks.pop(0) if chunks else line
        state.turns = 1
        state.chunks = chunks
        await self._emit_chunk(player, character, first, emotion)

    async def _emit_chunk(self, player: "PlayerSession", character: "Character", text: str, emotion: str) -> None:
        state = player.dialogue
        needs_continue = bool(state.chunks)
        state.waiting_for_reply = not needs_continue
        if state.waiting_for_reply:
            state.anchor_x, state.anchor_y = player.x, player.y
        await self.sink.broadcast(
            dialogue_event(
                "npc_to_player",
                speaker_id=character.id,
                speaker_name=character.name,
                target_id=player.session_id,
                target_name=player.name,
                text=text,
                emotion=emotion,
                x=character.x,
                y=character.y,
                time_label=self.world.time_label(),
                needs_continue=needs_continue,
                waiting_for_reply=state.waiting_for_reply,
                turn=state.turns,
                turn_max=state.turns + len(state.chunks),
            )
        )
        if state.waiting_for_reply:
            await self.sink.to_session(
                player.session_id, {"type": "dialogue_waiting_reply", "npc_id": character.id, "npc_name": character.name}
            )

    async def end(self, player: "PlayerSession") -> None:
        player.dialogue.reset()
        await self.sink.to_session(player.session_id, {"type": "dialogue_ended"})

    async def start(self, player: "PlayerSession", character: "Character") -> None:
        state = player.dialogue
        state.reset()
        state.active = True
        state.npc_id = character.id
        if self.cancel_token is not None:
            self.cancel_token.cancel()

        introduced = False
        try:
            introduced = await asyncio.to_thread(self.store.has_introduced, character.id, player.player_id)
        except Exception as exc:
            logger.warning("[DIALOGUE] intro lookup failed: %s", exc)

        if not introduced:
            line = intro_line(character)
            emotion = "friendly"
            await self._write(
                character.id,
                "player_intro",
                f"{character.name} introduced themselves to {player.name} for the first time.",
                importance=6,
                tags=[character.role, "player", f"intro:{player.player_id}", f"player:{player.player_id}"],
            )
        else:
            continuity = await self.continuity_hint(character, player)
            topic = self.world.rng.choice(TOWN_LIFE_TOPICS)
            memories = await self._recent(character.id, 4, topic)
            context = self._line_context(
                character,
                self._player_target(player),
                memories,
                f"casual personal talk about {topic}. social context: {self._social_hint(character)}. "
                f"personal continuity: {continuity}.",
            )
            payload = await self._generate_line(context)
            line, emotion = payload["line"], payload.get("emotion") or "calm"
            await self._write(
                character.id,
                "dialogue",
                payload.get("memory_note") or f"{character.name} chatted with {player.name}.",
                importance=5,
                tags=[character.role, "player", f"player:{player.player_id}"],
            )

        if player.session_id not in self.world.players or state.npc_id != character.id:
            return
        await self._deliver(player, character, line, emotion)
        shift = await self.assess_shift(character, player.player_id, player.name, line, f"first contact near {character.area}")
        await self._apply_player_shift(character, player, int(shift.get("delta") or 0), str(shift.get("rationale") or ""))
        push_town_event(self.world, f"{character.name} met with {player.name} near {character.area}.")
        now = self.clock()
        character.talk_cooldown_until = now + TALK_COOLDOWN_SECONDS
        self.last_auto_at = now

    async def continue_chunk(self, player: "PlayerSession", character: "Character") -> None:
        state = player.dialogue
        if state.waiting_for_reply:
            return
        if not state.chunks:
            await self.end(player)
            return
        state.turns += 1
        text = state.chunks.pop(0)
        await self._emit_chunk(player, character, text, "calm")

    async def _apply_player_shift(self, character: "Character", player: "PlayerSession", delta: int, rationale: str) -> None:
        if delta == 0:
            return
        try:
            await asyncio.to_thread(self.store.upsert_relationship_delta, character.id, player.player_id, delta, rationale)
        except Exception as exc:
            logger.warning("[DIALOGUE] relationship write failed: %s", exc)
        apply_reputation_delta(
            player.reputation, delta, role=character.role, reason=f"dialogue tone with {character.name}", now=self.clock()
        )

    async def _record_player_turn(self, character: "Character", player: "PlayerSession", text: str) -> str:
        context = {"scope": f"day:{self.world.day}", "subject_id": character.id, "text": text}
        try:
            result = await asyncio.to_thread(self.generator.classify_memory, context)
        except Exception as exc:
            logger.warning("[DIALOGUE] classification failed: %s", exc)
            return ""
        category = str(result.get("category") or "none")
        tags = [character.role, "player", f"player:{player.player_id}"]
        if category != "none":
            await self._write(
                character.id,
                "player_commitment",
                f"{player.name} said to {character.name}: {text}",
                importance=6,
                tags=tags + [f"category:{category}"],
            )
        if result.get("resolved"):
            open_category = await self._open_commitment(character, player)
            if open_category:
                await self._write(
                    character.id,
                    "player_commitment",
                    f"{player.name} resolved an earlier {open_category} with {character.name}.",
                    importance=5,
                    tags=tags + [f"category:{open_category}_resolved"],
                )
        return "" if category == "none" else category

    async def _open_commitment(self, character: "Character", player: "PlayerSession") -> str | None:
        rows = await self._by_tag(character.id, f"player:{player.player_id}", 12)
        resolved = {row.category()[: -len("_resolved")] for row in rows if row.category().endswith("_resolved")}
        for row in rows:
            if row.category() in ("promise", "apology") and row.category() not in resolved:
                return row.category()
        return None

    async def observation_reply(self, character: "Character", player: "PlayerSession", text: str) -> dict[str, Any]:
        rows = await self._by_tag(character.id, f"player:{player.player_id}", 30)
        reports = [report for report in (parse_observation_report(row) for row in rows) if report]
        asked = area_mention(text)
        matching = [report for report in reports if report.get("area") == asked] if asked else []
        candidates = matching or reports
        if not candidates:
            return {
                "line": "I haven't finished any scouting report for you yet.",
                "emotion": "neutral",
                "memory_note": f"{character.name} admitted they had no completed scouting report yet.",
            }
        best = candidates[0]
        return {
            "line": observation_reply_line(character, best),
            "emotion": "focused",
            "memory_note": f"{character.name} reported observations from {best['area']} to {player.name}.",
        }

    async def reply(self, player: "PlayerSession", character: "Character", text: str, *, observation: bool = False) -> None:
        """Player's chat while waiting: exactly one reply produces the next line."""
        state = player.dialogue
        if not state.active or not state.waiting_for_reply or state.npc_id != character.id:
            return
        if distance(character.x, character.y, player.x, player.y) > PLAYER_NEAR_DISTANCE:
            await self.end(player)
            return
        state.waiting_for_reply = False
        await self.sink.broadcast(
            dialogue_event(
                "player_chat",
                speaker_id=player.session_id,
                speaker_name=player.name,
                target_id=character.id,
                target_name=character.name,
                text=text,
                x=player.x,
                y=player.y,
                time_label=self.world.time_label(),
            )
        )

        category = await self._record_player_turn(character, player, text)
        if observation:
            payload = await self.observation_reply(character, player, text)
        else:
            continuity = await self.continuity_hint(character, player)
            memories = await self._recent(character.id, 4, text)
            hint = (
                f'reply mostly to player message tone/topic: "{text}". '
                f"social context: {self._social_hint(character)}. personal continuity: {continuity}."
            )
            if category:
                hint += f" latest player event: {category}."
            payload = await self._generate_line(
                self._line_context(character, self._player_target(player), memories, hint, player_text=text, turn=state.turns)
            )

        if player.session_id not in self.world.players or state.npc_id != character.id:
            return
        line = str(payload.get("line") or "")
        await self._write(
            character.id,
            "dialogue",
            payload.get("memory_note") or f"{character.name} answered {player.name}.",
            importance=4,
            tags=[character.role, "player", f"player:{player.player_id}"],
        )
        shift = await self.assess_shift(character, player.player_id, player.name, line, f"player chat near {character.area}")
        await self._apply_player_shift(character, player, int(shift.get("delta") or 0), str(shift.get("rationale") or ""))
        await self._deliver(player, character, line, str(payload.get("emotion") or "calm"))
        push_town_event(self.world, f"{player.name} checked in with {character.name} near {character.area}.")

    async def say(self, player: "PlayerSession", character: "Character", text: str, *, ok: bool) -> None:
        """Short NPC acknowledgement of a command. Does not open a dialogue."""
        await self.sink.broadcast(
            dialogue_event(
                "npc_to_player",
                speaker_id=character.id,
                speaker_name=character.name,
                target_id=player.session_id,
                target_name=player.name,
                text=text,
                emotion="focused" if ok else "neutral",
                x=character.x,
                y=character.y,
                time_label=self.world.time_label(),
                turn=1,
                turn_max=1,
            )
        )

    # -- autonomous NPC-NPC conversations --------------------------------------

    def maybe_start_conversation(self) -> "asyncio.Task[int] | None":
        if self.conversation_active or self.world.any_dialogue_active():
            return None
        now = self.clock()
        if now - self.last_auto_at < AUTO_DIALOGUE_INTERVAL_SECONDS:
            return None
        pair = pick_conversation_pair(self.world, now=now)
        if pair is None:
            return None
        token = CancellationToken()
        self.conversation_active = True
        self.cancel_token = token
        return asyncio.create_task(self.run_conversation(pair[0], pair[1], token))

    async def run_conversation(self, a: "Character", b: "Character", token: CancellationToken) -> int:
        """Alternate speakers for a few turns. Returns the number of lines spoken."""
        self.conversation_active = True
        self.cancel_token = token
        rng = self.world.rng
        speaker, target = (a, b) if rng.random() > 0.5 else (b, a)
        turns = rng.randint(MIN_TURNS, MAX_TURNS)
        previous = ""
        spoken = 0
        try:
            for index in range(turns):
                if token.cancelled or self.world.any_dialogue_active():
                    break
                if index == 0:
                    label = relation_label(relation_score(self.world.relations, speaker.id, target.id))
                    hint = f"casual NPC-to-NPC talk about {rng.choice(TOWN_LIFE_TOPICS)}. current relation={label}"
                else:
                    hint = f'reply to {target.name} naturally: "{previous}"'
                memories = await self._recent(speaker.id, 4, hint)
                target_view = {"id": target.id, "name": target.name, "role": target.role, "traits": list(target.traits)}
                payload = await self._generate_line(self._line_context(speaker, target_view, memories, hint, turn=index))
                line = str(payload.get("line") or "")
                await self.sink.broadcast(
                    dialogue_event(
                        "npc_to_npc",
                        speaker_id=speaker.id,
                        speaker_name=speaker.name,
                        target_id=target.id,
                        target_name=target.name,
                        text=line,
                        emotion=payload.get("emotion"),
                        x=speaker.x,
                        y=speaker.y,
                        time_label=self.world.time_label(),
                        turn=index + 1,
                        turn_max=turns,
                    )
                )
                spoken += 1
                await self._write(
                    speaker.id,
                    "npc_conversation",
                    payload.get("memory_note") or f"{speaker.name} talked with {target.name}.",
                    importance=4,
                    tags=[speaker.role, target.role, f"npc:{target.id}"],
                )
                shift = await self.assess_shift(speaker, target.id, target.name, line, f"npc conversation near {speaker.area}")
                delta = int(shift.get("delta") or 0)
                if delta:
                    bump_relation(self.world.relations, speaker.id, target.id, delta, str(shift.get("rationale") or ""), now=self.clock())
                push_town_event(self.world, f"{speaker.name} and {target.name} exchanged updates near {speaker.area}.")

                if index < turns - 1:
                    await self.sleep(TURN_DELAY_SECONDS)
                if token.cancelled or self.world.any_dialogue_active():
                    break
                previous = line
                speaker, target = target, speaker
        except Exception:
            logger.exception("[DIALOGUE] conversation between %s and %s failed", a.id, b.id)
        finally:
            now = self.clock()
            a.talk_cooldown_until = now + TALK_COOLDOWN_SECONDS
            b.talk_cooldown_until = now + TALK_COOLDOWN_SECONDS
            self.last_auto_at = now
            self.conversation_active = False
            if self.cancel_token is token:
                self.cancel_token = None
        return spoken
