"""Note list state for one board session.

The controller owns the ordered list of notes the user sees and merges three
sources into it: paginated loads from the gateway, change-feed events, and
local gestures. Every note keeps its last confirmed row plus two overlays:

* ``transient`` holds live gesture values; it never leaves the process.
* ``pending`` holds the values of a write that has been sent but not yet
  acknowledged.

The displayed note is ``confirmed`` overlaid with ``pending`` and then
``transient``, so remote events that touch a note mid-gesture or mid-write
only move the confirmed row and never make the note snap back.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..models.note import Note, round_rotation
from ..utils.geometry import Viewport, apply_opacity, is_valid_color, pointer_angle
from .advisories import AdvisoryCenter
from .ownership_registry import OwnershipRegistry
from .persistence_gateway import GatewayError, PersistenceGateway

logger = logging.getLogger(__name__)

MIN_NOTE_SIZE = 100


class EditPolicy(str, Enum):
    # Every mutation, gestures included, needs ownership.
    STRICT = "strict"
    # Anyone may drag; resize, rotate, recolor and delete need ownership.
    OPEN_DRAG = "open_drag"


class Action(str, Enum):
    DRAG = "drag"
    RESIZE = "resize"
    ROTATE = "rotate"
    RECOLOR = "recolor"
    DELETE = "delete"


_GATED_ACTIONS = {
    EditPolicy.STRICT: frozenset(Action),
    EditPolicy.OPEN_DRAG: frozenset({Action.RESIZE, Action.ROTATE, Action.RECOLOR, Action.DELETE}),
}


@dataclass
class NoteState:
    confirmed: Note
    pending: Dict[str, Any] = field(default_factory=dict)
    transient: Dict[str, Any] = field(default_factory=dict)

    @property
    def note_id(self) -> str:
        return self.confirmed.id

    def view(self) -> Note:
        if not self.pending and not self.transient:
            return self.confirmed
        return self.confirmed.with_fields({**self.pending, **self.transient})


@dataclass
class Gesture:
    action: Action
    note_id: str
    start_pointer: Tuple[float, float]
    start_value: Tuple[float, float]
    center: Tuple[float, float] = (0.0, 0.0)


class NoteSyncController:

    def __init__(
        self,
        gateway: PersistenceGateway,
        registry: OwnershipRegistry,
        advisories: Optional[AdvisoryCenter] = None,
        page_size: int = 20,
        max_pages: int = 5,
        policy: EditPolicy = EditPolicy.STRICT,
        revert_on_failure: bool = True,
    ):
        self.gateway = gateway
        self.registry = registry
        self.advisories = advisories or AdvisoryCenter()
        self.page_size = page_size
        self.max_pages = max_pages
        self.policy = policy
        self.revert_on_failure = revert_on_failure
        self.viewport = Viewport()
        self._states: Dict[str, NoteState] = {}
        self._order: List[str] = []
        # Ids seen deleted. Ids are never reused, so later rows for them are stale.
        self._deleted: Set[str] = set()
        self._gesture: Optional[Gesture] = None
        self._observers: List[Callable[[List[Note]], None]] = []

    # ---------------------------------------------------------------- queries

    @property
    def notes(self) -> List[Note]:
        return [self._states[note_id].view() for note_id in self._order]

    @property
    def gesture(self) -> Optional[Gesture]:
        return self._gesture

    def has_note(self, note_id: str) -> bool:
        return note_id in self._states

    def note(self, note_id: str) -> Optional[Note]:
        state = self._states.get(note_id)
        return state.view() if state else None

    def subscribe(self, callback: Callable[[List[Note]], None]) -> None:
        self._observers.append(callback)

    def _notify(self) -> None:
        snapshot = self.notes
        for callback in self._observers:
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Observer error: {e}")

    # ---------------------------------------------------------------- loading

    async def initial_load(self) -> List[Note]:
        return await self._load(use_cache=True)

    async def refresh(self) -> List[Note]:
        return await self._load(use_cache=False)

    async def _load(self, use_cache: bool) -> List[Note]:
        try:
            total = await self.gateway.count(use_cache=use_cache)
        except GatewayError as e:
            logger.error(f"Error getting notes count: {e}")
            self.advisories.post(str(e), level="error")
            return self.notes

        if total == 0:
            self._states.clear()
            self._order.clear()
            self._gesture = None
            self._notify()
            return []

        page_count = min(math.ceil(total / self.page_size), self.max_pages)
        first_load = not self._order
        seen: List[str] = []
        complete = True

        for page in range(page_count):
            try:
                batch = await self.gateway.fetch_page(page, self.page_size, use_cache=use_cache)
            except GatewayError as e:
                logger.error(f"Error fetching notes page {page}: {e}")
                self.advisories.post(f"Some notes could not be loaded: {e}", level="warning")
                complete = False
                break

            for note in batch:
                seen.append(note.id)
                self._merge_row(note, append=first_load)
            self._notify()

        if complete and page_count * self.page_size >= total:
            self._drop_missing(set(seen))

        if first_load:
            self._order.sort(key=self.registry.contains)
        logger.info(f"Loaded {len(seen)} of {total} notes in {page_count} page(s)")
        self._notify()
        return self.notes

    def _merge_row(self, note: Note, append: bool = False) -> None:
        if note.id in self._deleted:
            logger.debug(f"Ignoring row for deleted note {note.id}")
            return
        state = self._states.get(note.id)
        if state is not None:
            state.confirmed = note
            return

        self._states[note.id] = NoteState(confirmed=note)
        if append or self.registry.contains(note.id):
            self._order.append(note.id)
            return
        # Notes owned by others stay below the ones this profile owns.
        for index, note_id in enumerate(self._order):
            if self.registry.contains(note_id):
                self._order.insert(index, note.id)
                return
        self._order.append(note.id)

    def _drop_missing(self, present: set) -> None:
        for note_id in [i for i in self._order if i not in present]:
            if self._states[note_id].pending:
                continue
            self._remove(note_id)

    def _remove(self, note_id: str) -> None:
        self._states.pop(note_id, None)
        if note_id in self._order:
            self._order.remove(note_id)
        if self._gesture and self._gesture.note_id == note_id:
            self._gesture = None

    def add_local(self, note: Note) -> None:
        """Show a note this client just inserted."""
        self._merge_row(note)
        self._notify()

    # ---------------------------------------------------------- remote events

    def apply_remote_row(self, note: Note) -> None:
        self._merge_row(note)
        self._notify()

    def apply_remote_fields(self, note_id: str, fields: Dict[str, Any]) -> None:
        state = self._states.get(note_id)
        if state is None:
            return
        state.confirmed = state.confirmed.with_fields(fields)
        self._notify()

    def apply_remote_delete(self, note_id: str) -> None:
        self._deleted.add(note_id)
        if note_id in self._states:
            self._remove(note_id)
            self._notify()
        self.registry.remove(note_id)

    # ---------------------------------------------------------- authorization

    def can_edit(self, note_id: str, action: Action) -> bool:
        if action not in _GATED_ACTIONS[self.policy]:
            return True
        return self.registry.contains(note_id)

    # ------------------------------------------------------------- activation

    def activate(self, note_id: str) -> None:
        """Bring a note to the top of the stacking order. Not persisted."""
        if note_id not in self._states or self._order[-1] == note_id:
            return
        self._order.remove(note_id)
        self._order.append(note_id)
        self._notify()

    # --------------------------------------------------------------- gestures

    def set_viewport(self, pan_x: float, pan_y: float, scale: float) -> None:
        self.viewport = Viewport(pan_x=pan_x, pan_y=pan_y, scale=scale)

    def begin_drag(self, note_id: str, screen_x: float, screen_y: float) -> bool:
        return self._begin(Action.DRAG, note_id, screen_x, screen_y)

    def begin_resize(self, note_id: str, screen_x: float, screen_y: float) -> bool:
        return self._begin(Action.RESIZE, note_id, screen_x, screen_y)

    def begin_rotate(self, note_id: str, screen_x: float, screen_y: float) -> bool:
        return self._begin(Action.ROTATE, note_id, screen_x, screen_y)

    def _begin(self, action: Action, note_id: str, screen_x: float, screen_y: float) -> bool:
        state = self._states.get(note_id)
        if state is None:
            return False
        self.activate(note_id)

        if not self.can_edit(note_id, action):
            logger.info(f"{action.value} rejected for note {note_id}: not owned")
            return False
        if self._gesture is not None:
            logger.debug(f"{action.value} ignored: a {self._gesture.action.value} is in progress")
            return False
        if state.pending:
            logger.debug(f"{action.value} ignored: write for {note_id} still in flight")
            return False

        current = state.view()
        pointer = self.viewport.to_canvas(screen_x, screen_y)
        width, height = current.size
        center = (current.position_x + width / 2, current.position_y + height / 2)
        if action is Action.DRAG:
            start_value = current.position
        elif action is Action.RESIZE:
            start_value = (float(width), float(height))
        else:
            start_value = (float(current.angle), pointer_angle(center, pointer))

        self._gesture = Gesture(action, note_id, pointer, start_value, center)
        return True

    def pointer_move(self, screen_x: float, screen_y: float) -> Optional[Note]:
        """Update the live gesture value. Never touches the network."""
        gesture = self._gesture
        if gesture is None:
            return None
        state = self._states.get(gesture.note_id)
        if state is None:
            self._gesture = None
            return None

        pointer = self.viewport.to_canvas(screen_x, screen_y)
        dx = pointer[0] - gesture.start_pointer[0]
        dy = pointer[1] - gesture.start_pointer[1]

        if gesture.action is Action.DRAG:
            state.transient = {
                "position_x": gesture.start_value[0] + dx,
                "position_y": gesture.start_value[1] + dy,
            }
        elif gesture.action is Action.RESIZE:
            state.transient = {
                "width": max(MIN_NOTE_SIZE, round(gesture.start_value[0] + dx)),
                "height": max(MIN_NOTE_SIZE, round(gesture.start_value[1] + dy)),
            }
        else:
            start_rotation, start_angle = gesture.start_value
            angle = pointer_angle(gesture.center, pointer)
            state.transient = {"rotation": start_rotation + (angle - start_angle)}

        self._notify()
        return state.view()

    def cancel_gesture(self) -> None:
        gesture, self._gesture = self._gesture, None
        if gesture and gesture.note_id in self._states:
            self._states[gesture.note_id].transient = {}
            self._notify()

    async def end_gesture(self, screen_x: Optional[float] = None,
                          screen_y: Optional[float] = None) -> bool:
        """Finish the gesture and persist its final value with one update."""
        gesture = self._gesture
        if gesture is None:
            return False
        if screen_x is not None and screen_y is not None:
            self.pointer_move(screen_x, screen_y)

        self._gesture = None
        state = self._states.get(gesture.note_id)
        if state is None or not state.transient:
            if state is not None:
                state.transient = {}
            return False

        fields = dict(state.transient)
        if "rotation" in fields:
            fields["rotation"] = round_rotation(fields["rotation"])
        state.transient = {}
        return await self._commit(state, fields)

    # ---------------------------------------------------------- other edits

    async def recolor(self, note_id: str, color: str, opacity: float = 1.0) -> bool:
        if not is_valid_color(color):
            raise ValueError(f"Unsupported color: {color!r}")
        state = self._states.get(note_id)
        if state is None:
            return False
        if not self.can_edit(note_id, Action.RECOLOR):
            self.advisories.post("You can only change the color of notes you created.", level="warning")
            return False
        return await self._commit(state, {"color": apply_opacity(color, opacity)})

    async def delete(self, note_id: str) -> bool:
        if note_id not in self._states:
            return False
        if not self.can_edit(note_id, Action.DELETE):
            self.advisories.post("You can only delete notes you created.", level="warning")
            return False

        if not await self.gateway.delete(note_id):
            self.advisories.post("The note could not be deleted. Please try again.", level="error")
            return False

        self._deleted.add(note_id)
        self._remove(note_id)
        self.registry.remove(note_id)
        self._notify()
        return True

    async def _commit(self, state: NoteState, fields: Dict[str, Any]) -> bool:
        state.pending = dict(fields)
        self._notify()

        ok = False
        try:
            ok = await self.gateway.update(state.note_id, **fields)
        finally:
            # Skipped when the note was deleted while the write was in flight.
            if self._states.get(state.note_id) is state:
                self._settle(state, fields, ok)
        return ok

    def _settle(self, state: NoteState, fields: Dict[str, Any], ok: bool) -> None:
        if ok:
            state.confirmed = state.confirmed.with_fields(fields)
        elif self.revert_on_failure:
            self.advisories.post("Your change could not be saved and was undone.", level="error")
        else:
            state.confirmed = state.confirmed.with_fields(fields)
            self.advisories.post("Your change could not be saved.", level="error")
        state.pending = {}
        self._notify()
