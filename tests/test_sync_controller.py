import asyncio

import pytest
from redis.exceptions import ResponseError

from noteboard.services.advisories import AdvisoryCenter
from noteboard.services.persistence_gateway import PersistenceGateway
from noteboard.services.sync_controller import Action, EditPolicy, NoteSyncController

from conftest import FakeNoteStore, make_note


def _ids(controller):
    return [note.id for note in controller.notes]


def _seed(store, *notes):
    for note in notes:
        store.rows[note.id] = note


def test_initial_load_keeps_owned_notes_on_top(controller, store, registry):
    _seed(store, make_note("a", 1), make_note("b", 2), make_note("c", 3))
    registry.add("b")

    asyncio.run(controller.initial_load())

    assert _ids(controller) == ["c", "a", "b"]
    assert store.count_calls("select_page") == 2


def test_load_publishes_each_page(controller, store):
    _seed(store, make_note("a", 1), make_note("b", 2), make_note("c", 3))
    sizes = []
    controller.subscribe(lambda notes: sizes.append(len(notes)))

    asyncio.run(controller.initial_load())

    assert sizes[0] == 2
    assert sizes[-1] == 3


def test_load_is_capped_at_max_pages(store, gateway, registry):
    _seed(store, *(make_note(f"n{i}", i) for i in range(7)))
    controller = NoteSyncController(gateway, registry, page_size=2, max_pages=2)

    asyncio.run(controller.initial_load())

    assert _ids(controller) == ["n6", "n5", "n4", "n3"]
    assert store.count_calls("select_page") == 2


def test_empty_board_clears_list(controller, store):
    _seed(store, make_note("a"))
    asyncio.run(controller.initial_load())
    store.rows.clear()

    assert asyncio.run(controller.refresh()) == []
    assert controller.notes == []


def test_refresh_drops_notes_deleted_elsewhere(controller, store):
    _seed(store, make_note("a", 1), make_note("b", 2))
    asyncio.run(controller.initial_load())
    del store.rows["a"]

    asyncio.run(controller.refresh())

    assert _ids(controller) == ["b"]


def test_count_failure_posts_advisory_and_keeps_list(store, fast_retry, registry):
    class FlakyCountStore(FakeNoteStore):
        async def count(self):
            raise ConnectionError("offline")

    broken = FlakyCountStore([make_note("a")])
    controller = NoteSyncController(PersistenceGateway(broken, retry_policy=fast_retry), registry)

    assert asyncio.run(controller.initial_load()) == []
    assert controller.advisories.active[0].level == "error"


def test_remote_insert_lands_below_owned_notes(controller, store, registry):
    _seed(store, make_note("a", 1), make_note("b", 2))
    registry.add("b")
    asyncio.run(controller.initial_load())

    controller.apply_remote_row(make_note("c", 3))
    assert _ids(controller) == ["a", "c", "b"]

    registry.add("d")
    controller.add_local(make_note("d", 4))
    assert _ids(controller) == ["a", "c", "b", "d"]


def test_activate_moves_note_to_top(controller, store):
    _seed(store, make_note("a", 1), make_note("b", 2), make_note("c", 3))
    asyncio.run(controller.initial_load())

    controller.activate("c")

    assert _ids(controller)[-1] == "c"
    assert store.count_calls("update") == 0


def test_drag_corrects_for_zoom_and_persists_once(controller, store, registry):
    _seed(store, make_note("a", position_x=150.0, position_y=200.0))
    registry.add("a")
    asyncio.run(controller.initial_load())
    controller.set_viewport(30, -10, 2.0)

    assert controller.begin_drag("a", 100, 100)
    controller.pointer_move(120, 110)
    moved = controller.pointer_move(140, 60)

    assert moved.position == (170.0, 180.0)
    assert store.count_calls("update") == 0

    assert asyncio.run(controller.end_gesture())
    assert store.calls[-1] == ("update", "a", {"position_x": 170.0, "position_y": 180.0})
    assert store.count_calls("update") == 1
    assert controller.note("a").position == (170.0, 180.0)
    assert controller.gesture is None


def test_resize_is_clamped_to_minimum(controller, store, registry):
    _seed(store, make_note("a"))
    registry.add("a")
    asyncio.run(controller.initial_load())

    assert controller.begin_resize("a", 0, 0)
    assert controller.pointer_move(-200, 40).size == (100, 296)
    assert asyncio.run(controller.end_gesture())
    assert store.rows["a"].size == (100, 296)


def test_rotate_persists_whole_degrees(controller, store, registry):
    # Default 256px note at (150, 200) rotates around (278, 328).
    _seed(store, make_note("a", rotation=10))
    registry.add("a")
    asyncio.run(controller.initial_load())

    assert controller.begin_rotate("a", 378, 328)
    rotated = controller.pointer_move(378, 428)
    assert rotated.rotation == pytest.approx(55.0)

    assert asyncio.run(controller.end_gesture())
    assert store.calls[-1] == ("update", "a", {"rotation": 55})


def test_cancel_gesture_restores_confirmed_value(controller, store, registry):
    _seed(store, make_note("a"))
    registry.add("a")
    asyncio.run(controller.initial_load())

    controller.begin_drag("a", 0, 0)
    controller.pointer_move(50, 50)
    controller.cancel_gesture()

    assert controller.note("a").position == (150.0, 200.0)
    assert store.count_calls("update") == 0


def test_unowned_notes_are_read_only(controller, store):
    _seed(store, make_note("a"))
    asyncio.run(controller.initial_load())

    assert not controller.begin_drag("a", 0, 0)
    assert not controller.begin_rotate("a", 0, 0)
    assert controller.gesture is None
    assert controller.pointer_move(40, 40) is None
    assert not asyncio.run(controller.recolor("a", "#dbeafe"))
    assert not asyncio.run(controller.delete("a"))

    assert store.count_calls("update") == 0
    assert store.count_calls("delete") == 0
    assert len(controller.advisories.active) == 2
    # Tapping still brings the note forward.
    assert _ids(controller) == ["a"]


def test_open_drag_policy_allows_dragging_any_note(store, gateway, registry):
    _seed(store, make_note("a"))
    controller = NoteSyncController(gateway, registry, policy=EditPolicy.OPEN_DRAG)
    asyncio.run(controller.initial_load())

    assert controller.can_edit("a", Action.DRAG)
    assert not controller.can_edit("a", Action.RESIZE)
    assert not controller.begin_resize("a", 0, 0)
    assert controller.begin_drag("a", 0, 0)


def test_remote_change_mid_gesture_does_not_snap_back(controller, store, registry):
    _seed(store, make_note("a"))
    registry.add("a")
    asyncio.run(controller.initial_load())

    controller.begin_drag("a", 0, 0)
    controller.pointer_move(25, 25)
    controller.apply_remote_fields("a", {"position_x": 900.0, "color": "#fce7f3"})

    view = controller.note("a")
    assert view.position == (175.0, 225.0)
    assert view.color == "#fce7f3"

    asyncio.run(controller.end_gesture())
    assert controller.note("a").position == (175.0, 225.0)


def test_write_in_flight_blocks_new_gesture(controller, store, registry):
    _seed(store, make_note("a"))
    registry.add("a")
    asyncio.run(controller.initial_load())
    release = None
    original_update = store.update

    async def slow_update(note_id, fields):
        await release.wait()
        return await original_update(note_id, fields)

    store.update = slow_update

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        controller.begin_drag("a", 0, 0)
        controller.pointer_move(10, 0)
        commit = asyncio.create_task(controller.end_gesture())
        await asyncio.sleep(0)

        blocked = controller.begin_drag("a", 0, 0)
        shown = controller.note("a").position
        release.set()
        return blocked, shown, await commit

    blocked, shown, ok = asyncio.run(scenario())
    assert not blocked
    assert shown == (160.0, 200.0)
    assert ok
    assert controller.begin_drag("a", 0, 0)


def test_failed_write_reverts_with_advisory(controller, store, registry):
    _seed(store, make_note("a"))
    registry.add("a")
    asyncio.run(controller.initial_load())
    store.fail_writes = True

    controller.begin_drag("a", 0, 0)
    controller.pointer_move(40, 40)

    assert not asyncio.run(controller.end_gesture())
    assert controller.note("a").position == (150.0, 200.0)
    assert controller.advisories.active[-1].level == "error"


def test_failed_write_can_keep_local_value(store, gateway, registry):
    _seed(store, make_note("a"))
    registry.add("a")
    controller = NoteSyncController(gateway, registry, advisories=AdvisoryCenter(), revert_on_failure=False)
    asyncio.run(controller.initial_load())
    store.fail_writes = True

    controller.begin_drag("a", 0, 0)
    assert not asyncio.run(controller.end_gesture(40, 40))
    assert controller.note("a").position == (190.0, 240.0)
    assert controller.advisories.active


def test_recolor_applies_opacity(controller, store, registry):
    _seed(store, make_note("a"))
    registry.add("a")
    asyncio.run(controller.initial_load())

    assert asyncio.run(controller.recolor("a", "#dbeafe", opacity=0.5))
    assert store.rows["a"].color == "rgba(219,234,254,0.5)"


def test_delete_removes_note_and_ownership(controller, store, registry):
    _seed(store, make_note("a", 1), make_note("b", 2))
    registry.add("a")
    registry.add("b")
    asyncio.run(controller.initial_load())

    assert asyncio.run(controller.delete("a"))

    assert _ids(controller) == ["b"]
    assert "a" not in store.rows
    assert registry.ids == {"b"}


def test_failed_delete_keeps_note(controller, store, registry):
    _seed(store, make_note("a"))
    registry.add("a")
    asyncio.run(controller.initial_load())
    store.fail_writes = True

    assert not asyncio.run(controller.delete("a"))
    assert _ids(controller) == ["a"]
    assert "a" in registry


def test_store_error_on_commit_clears_pending_write(controller, store, registry):
    _seed(store, make_note("a"))
    registry.add("a")
    asyncio.run(controller.initial_load())

    async def rejecting_update(note_id, fields):
        raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")

    store.update = rejecting_update
    controller.begin_drag("a", 0, 0)
    controller.pointer_move(10, 10)

    assert asyncio.run(controller.end_gesture()) is False
    assert controller.note("a").position == (150.0, 200.0)
    assert controller.begin_drag("a", 0, 0)


def test_stale_rows_for_deleted_notes_are_ignored(controller, store):
    _seed(store, make_note("a", 1), make_note("b", 2))
    asyncio.run(controller.initial_load())

    controller.apply_remote_delete("a")
    controller.apply_remote_row(make_note("a", 1, position_x=400.0))
    controller.apply_remote_delete("a")

    assert _ids(controller) == ["b"]


def test_recolor_rejects_unknown_color_format(controller, store, registry):
    _seed(store, make_note("a"))
    registry.add("a")
    asyncio.run(controller.initial_load())

    with pytest.raises(ValueError):
        asyncio.run(controller.recolor("a", "teal"))
    assert store.count_calls("update") == 0
