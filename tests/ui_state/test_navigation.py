import datetime as dt

import pytest
from prompt_toolkit.keys import Keys

import todo_tracker as tt

from .helpers import FakeTerminal, make_task

TODAY = dt.date(2024, 1, 10)


@pytest.mark.parametrize(
    'position, size, expected',
    [(0, 0, 0), (5, 0, 0), (0, 3, 0), (2, 3, 2), (3, 3, 2), (10, 3, 2)],
)
def test_get_pos_overflow(position, size, expected):
    assert tt.get_pos_overflow(position, size) == expected


def test_positions_wrap_and_stay_in_range():
    for size in range(1, 6):
        for pos in range(size):
            nxt = tt.next_position(pos, size)
            prv = tt.prev_position(pos, size)
            assert 0 <= nxt < size
            assert 0 <= prv < size
            assert tt.prev_position(nxt, size) == pos
    assert tt.next_position(2, 3) == 0
    assert tt.prev_position(0, 3) == 2
    assert tt.next_position(0, 0) == 0
    assert tt.prev_position(0, 0) == 0


def _tasks():
    return [make_task(title=f't{i}') for i in range(3)]


def _navigate(keys, tasks=None, position=0):
    terminal = FakeTerminal(keys)
    nav = tt.Navigator(terminal, today=TODAY)
    result = nav.navigate(_tasks() if tasks is None else tasks, position)
    return result, terminal


def test_back_returns_none_and_restores_cursor():
    result, terminal = _navigate([Keys.Down, Keys.ControlM])
    assert result is None
    assert terminal.calls[0] == 'hide_cursor'
    assert terminal.calls[-1] == 'show_cursor'


def test_direct_actions_carry_cursor():
    result, _ = _navigate([Keys.Down, Keys.Down, '+'])
    assert result == (2, tt.Action.of(tt.ActionKind.INCREASE_PRIORITY))

    result, _ = _navigate([Keys.Up, 'x'])
    assert result == (2, tt.Action.of(tt.ActionKind.TOGGLE_READ))


def test_entry_position_is_clamped():
    result, terminal = _navigate(['e'], position=7)
    assert result == (2, tt.Action.of(tt.ActionKind.EDIT))
    assert terminal.screen()[2].startswith('>')


def test_selected_row_is_marked():
    _, terminal = _navigate([Keys.Down, 'a'])
    rows = terminal.screen()[:3]
    assert [row[0] for row in rows] == [' ', '>', ' ']


def test_sort_choice_resets_cursor_and_cancel_reloads():
    result, _ = _navigate([Keys.Down, 's', 'd'])
    assert result == (0, tt.Action.sort_by(tt.SortingMethod.DUE))

    result, _ = _navigate([Keys.Down, 's', Keys.ControlH])
    assert result == (1, tt.RELOAD)


def test_delete_confirmation_paths():
    assert _navigate(['z', 'y'], position=1)[0] == (1, tt.Action.of(tt.ActionKind.DELETE))
    assert _navigate(['z', 'n'], position=1)[0] == (1, tt.RELOAD)
    assert _navigate(['Z', 'y'])[0] == (0, tt.Action.of(tt.ActionKind.DELETE_COMPLETED))
    assert _navigate(['Z', Keys.ControlM])[0] == (0, tt.RELOAD)


def test_export_shows_notice_and_pauses(monkeypatch):
    pauses = []
    monkeypatch.setattr(tt.time, 'sleep', pauses.append)
    result, terminal = _navigate(['m'])
    assert result == (0, tt.Action.of(tt.ActionKind.EXPORT))
    assert pauses == [tt.EXPORT_PAUSE]
    assert 'Exporting...' in terminal.screen()


def test_empty_list_shows_hint_and_still_returns_actions():
    result, terminal = _navigate([Keys.Down, Keys.Up, 'x'], tasks=[])
    assert result == (0, tt.Action.of(tt.ActionKind.TOGGLE_READ))
    assert terminal.screen()[0] == tt.EMPTY_HINT


def test_long_key_sequences_do_not_grow_the_stack():
    keys = [Keys.Down] * 1500 + [Keys.ControlM]
    result, _ = _navigate(keys)
    assert result is None
