import datetime as dt
from typing import List, Optional

from prompt_toolkit.output import DummyOutput

import todo_tracker as tt


def make_task(**overrides) -> tt.Task:
    base = dict(
        title='Task One',
        priority=1,
        due=None,
        completed=False,
        progress=tt.Progress.ZERO,
        created=dt.datetime(2024, 1, 10, 9, 0, 0),
    )
    base.update(overrides)
    return tt.Task(**base)


class RecordingOutput(DummyOutput):
    """DummyOutput that keeps the text and the cursor/screen calls it sees."""

    def __init__(self):
        super().__init__()
        self.written: List[str] = []
        self.calls: List[str] = []

    def write(self, data: str) -> None:
        self.written.append(data)

    def erase_screen(self) -> None:
        self.calls.append('erase_screen')
        self.written.append('\f')

    def erase_down(self) -> None:
        self.calls.append('erase_down')

    def cursor_up(self, amount: int) -> None:
        self.calls.append(f'cursor_up:{amount}')

    def hide_cursor(self) -> None:
        self.calls.append('hide_cursor')

    def show_cursor(self) -> None:
        self.calls.append('show_cursor')

    def screen(self) -> List[str]:
        """Lines written since the last screen clear."""
        text = ''.join(self.written).split('\f')[-1].replace('\r', '')
        return [line for line in text.split('\n') if line]


class FakeTerminal(tt.Terminal):
    """Terminal that replays scripted key names instead of reading stdin."""

    def __init__(self, keys=()):
        super().__init__(output=RecordingOutput())
        self.keys = list(keys)

    def _fill_pending(self) -> None:
        if not self.keys:
            raise AssertionError('ran out of scripted keys')
        self._pending.append(self.keys.pop(0))

    @property
    def calls(self) -> List[str]:
        return self.output.calls

    def screen(self) -> List[str]:
        return self.output.screen()


class FakePrompter:
    """Answers the add/edit prompts from queues and records the defaults offered."""

    def __init__(self, titles=(), dues=(), priorities=()):
        self.titles = list(titles)
        self.dues = list(dues)
        self.priorities = list(priorities)
        self.defaults: List[tuple] = []

    def title(self, default: str = '') -> str:
        self.defaults.append(('title', default))
        return self.titles.pop(0)

    def due_date(self, default: str = '') -> str:
        self.defaults.append(('due', default))
        return self.dues.pop(0)

    def priority(self, default: int = 0) -> int:
        self.defaults.append(('priority', default))
        value: Optional[int] = self.priorities.pop(0)
        return default if value is None else value
