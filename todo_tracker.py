#!/usr/bin/env python3
# todo_tracker: Terminal personal task tracker backed by a local sqlite file
#
# Hotkeys
#   Up/Down     move selection (wraps around)
#   Left/Right  decrease/increase progress of the selected task
#   +/-         increase/decrease priority of the selected task
#   x           toggle completed
#   a           add a task (empty title goes back)
#   e           edit the selected task (empty title goes back)
#   s           sort menu: p priority, d due date, c creation date, Backspace back
#   z           delete the selected task (asks y/N)
#   Z           delete every completed task (asks y/N)
#   m           export the list to markdown
#   Enter       exit
#
# Config highlights (YAML, default ~/.todo_tracker.yaml, written on first run)
#     default_sort: due            # priority | due | created
#     export_on_exit: false
#     md_file: ~/todo.md
#     db_path: ~/.todo_tracker.db
#     log_file: ~/.todo_tracker.log
#     log_level: ERROR
#
# Environment
# - DEFAULT_SORT, EXPORT_ON_EXIT, MD_FILE, TODO_DB, LOG_FILE override the file

from __future__ import annotations

import argparse
import calendar
import datetime as dt
import enum
import logging
import os
import re
import select
import sqlite3
import sys
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import yaml
from prompt_toolkit import print_formatted_text, prompt
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.input import Input, create_input
from prompt_toolkit.keys import Keys
from prompt_toolkit.output import Output, create_output
from prompt_toolkit.styles import Style
from prompt_toolkit.validation import Validator


logger = logging.getLogger('todo_tracker')


# -----------------------------
# Errors
# -----------------------------
class TrackerError(Exception):
    """Base class for errors raised by the tracker."""


class InputValidationError(TrackerError, ValueError):
    """Malformed user input (eg. a due date that cannot be resolved)."""


class StorageError(TrackerError):
    """The task database could not be read or written."""


# -----------------------------
# Config models
# -----------------------------
class SortingMethod(enum.Enum):
    PRIORITY = "priority"
    DUE = "due"
    CREATED = "created"


DEFAULT_CONFIG_PATH = "~/.todo_tracker.yaml"
TRUE_WORDS = {"1", "true", "yes", "on"}
FALSE_WORDS = {"0", "false", "no", "off", ""}


@dataclass
class Config:
    default_sort: SortingMethod = SortingMethod.DUE
    export_on_exit: bool = False
    md_file: str = "~/todo.md"
    db_path: str = "~/.todo_tracker.db"
    log_file: str = "~/.todo_tracker.log"
    log_level: str = "ERROR"

    def __post_init__(self) -> None:
        self.md_file = os.path.expanduser(self.md_file)
        self.db_path = os.path.expanduser(self.db_path)
        self.log_file = os.path.expanduser(self.log_file)


def parse_sort_method(raw: object) -> SortingMethod:
    if isinstance(raw, SortingMethod):
        return raw
    name = str(raw or "").strip().lower()
    try:
        return SortingMethod(name)
    except ValueError:
        choices = ", ".join(m.value for m in SortingMethod)
        raise ValueError(f"Config: unknown sort method {raw!r} (expected one of: {choices})") from None


def parse_bool(raw: object, default: bool = False) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    word = str(raw).strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise ValueError(f"Config: expected a boolean, got {raw!r}")


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build a Config from defaults, the YAML file, then environment overrides."""
    path = os.path.expanduser(path or DEFAULT_CONFIG_PATH)
    raw: Dict[str, object] = {}
    if os.path.isfile(path):
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"Config: expected a mapping in {path}")
        raw = dict(loaded or {})
    env = os.environ if environ is None else environ

    defaults = Config()
    sort_raw = env.get("DEFAULT_SORT") or raw.get("default_sort") or defaults.default_sort
    export_raw = env.get("EXPORT_ON_EXIT", raw.get("export_on_exit"))
    return Config(
        default_sort=parse_sort_method(sort_raw),
        export_on_exit=parse_bool(export_raw, defaults.export_on_exit),
        md_file=str(env.get("MD_FILE") or raw.get("md_file") or defaults.md_file),
        db_path=str(env.get("TODO_DB") or raw.get("db_path") or defaults.db_path),
        log_file=str(env.get("LOG_FILE") or raw.get("log_file") or defaults.log_file),
        log_level=str(raw.get("log_level") or defaults.log_level),
    )


def write_default_config(path: Optional[str] = None) -> bool:
    """Write a config file with default values unless one already exists."""
    path = os.path.expanduser(path or DEFAULT_CONFIG_PATH)
    if os.path.exists(path):
        return False
    directory = os.path.dirname(path)
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    data = {
        "default_sort": SortingMethod.DUE.value,
        "export_on_exit": False,
        "md_file": "~/todo.md",
        "db_path": "~/.todo_tracker.db",
        "log_file": "~/.todo_tracker.log",
        "log_level": "ERROR",
    }
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    return True


def setup_logging(log_path: str, log_level: str = 'ERROR') -> logging.Logger:
    # Always reset handlers so --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    directory = os.path.dirname(os.path.abspath(log_path))
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


# -----------------------------
# Task model
# -----------------------------
MAX_PRIORITY = 3
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"  # fixed width, so text order is time order


class Progress(enum.Enum):
    ZERO = 0
    QUARTER = 25
    HALF = 50
    THREE_QUARTER = 75
    FULL = 100

    def up(self) -> "Progress":
        levels = list(Progress)
        return levels[min(levels.index(self) + 1, len(levels) - 1)]

    def down(self) -> "Progress":
        levels = list(Progress)
        return levels[max(levels.index(self) - 1, 0)]

    @property
    def bar_cells(self) -> int:
        """Filled cells out of PROGRESS_BAR_WIDTH (0, 2, 4, 6, 8)."""
        return self.value * PROGRESS_BAR_WIDTH // 100


def clamp_priority(value: int) -> int:
    return max(0, min(MAX_PRIORITY, int(value)))


def _now() -> dt.datetime:
    return dt.datetime.now()


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Task:
    title: str
    priority: int = 0
    due: Optional[dt.date] = None
    completed: bool = False
    progress: Progress = Progress.ZERO
    created: dt.datetime = field(default_factory=_now)
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        self.priority = clamp_priority(self.priority)

    def toggle_completed(self) -> None:
        self.completed = not self.completed

    def increase_priority(self) -> None:
        self.priority = clamp_priority(self.priority + 1)

    def decrease_priority(self) -> None:
        self.priority = clamp_priority(self.priority - 1)

    def increase_progress(self) -> None:
        self.progress = self.progress.up()

    def decrease_progress(self) -> None:
        self.progress = self.progress.down()


# -----------------------------
# DB
# -----------------------------
@contextmanager
def _storage_errors(message: str) -> Iterator[None]:
    try:
        yield
    except (sqlite3.Error, OSError) as exc:
        raise StorageError(f"{message}: {exc}") from exc


class TaskDB:
    CREATE_TABLE_SQL = """      CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        created TEXT NOT NULL,
        due TEXT,
        completed INTEGER NOT NULL DEFAULT 0,
        progress INTEGER NOT NULL DEFAULT 0
      )
    """
    SELECT_SQL = "SELECT id, title, priority, created, due, completed, progress FROM tasks"

    def __init__(self, path: str):
        self.path = path
        with _storage_errors(f"Error opening database {path}"):
            directory = os.path.dirname(os.path.abspath(path)) if path != ':memory:' else ''
            if directory and not os.path.isdir(directory):
                os.makedirs(directory, exist_ok=True)
            self.conn = sqlite3.connect(path)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self._ensure_schema()

    def close(self) -> None:
        self.conn.close()

    def _ensure_schema(self):
        self.conn.execute(self.CREATE_TABLE_SQL)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_completed ON tasks(completed)")
        self.conn.commit()

    @staticmethod
    def _row_to_task(row: Sequence[object]) -> Task:
        tid, title, priority, created, due, completed, progress = row
        try:
            return Task(
                id=str(tid),
                title=str(title),
                priority=int(priority),
                created=dt.datetime.strptime(str(created), TIMESTAMP_FORMAT),
                due=dt.date.fromisoformat(str(due)) if due else None,
                completed=bool(completed),
                progress=Progress(int(progress)),
            )
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Corrupt task record {tid!r}: {exc}") from exc

    @staticmethod
    def _task_params(task: Task) -> Tuple[object, ...]:
        return (
            task.title,
            task.priority,
            task.created.strftime(TIMESTAMP_FORMAT),
            task.due.isoformat() if task.due else None,
            int(task.completed),
            task.progress.value,
            task.id,
        )

    def all(self) -> List[Task]:
        with _storage_errors("Error reading tasks"):
            rows = self.conn.execute(self.SELECT_SQL + " ORDER BY created, id").fetchall()
        return [self._row_to_task(r) for r in rows]

    def completed(self) -> List[Task]:
        with _storage_errors("Error reading completed tasks"):
            rows = self.conn.execute(self.SELECT_SQL + " WHERE completed = 1 ORDER BY created, id").fetchall()
        return [self._row_to_task(r) for r in rows]

    def get(self, task_id: str) -> Optional[Task]:
        with _storage_errors(f"Error reading task {task_id}"):
            row = self.conn.execute(self.SELECT_SQL + " WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def insert(self, task: Task) -> None:
        with _storage_errors("Error inserting task"):
            self.conn.execute(
                "INSERT INTO tasks (title, priority, created, due, completed, progress, id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                self._task_params(task),
            )
            self.conn.commit()
        logger.debug("Inserted task %s", task.id)

    def update(self, task: Task) -> None:
        with _storage_errors(f"Error updating task {task.id}"):
            self.conn.execute(
                "UPDATE tasks SET title=?, priority=?, created=?, due=?, completed=?, progress=? WHERE id=?",
                self._task_params(task),
            )
            self.conn.commit()
        logger.debug("Updated task %s", task.id)

    def delete(self, task_id: str) -> None:
        with _storage_errors(f"Error deleting task {task_id}"):
            self.conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            self.conn.commit()
        logger.debug("Deleted task %s", task_id)

    def delete_completed(self) -> int:
        """Delete each completed task; returns how many were removed."""
        done = self.completed()
        for task in done:
            self.delete(task.id)
        return len(done)

    def counts(self) -> Tuple[int, int]:
        with _storage_errors("Error counting tasks"):
            total, done = self.conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(completed), 0) FROM tasks"
            ).fetchone()
        return int(total), int(done)


# -----------------------------
# Due dates
# -----------------------------
DATE_FORMAT = "%d-%m-%Y"
DATE_RE = re.compile(r"^(0[1-9]|[12][0-9]|3[01])-(0[1-9]|1[012])(?:-((?:19|20)\d\d))?$")
NATURAL_DATES = ("today", "tomorrow", "next week", "next month")
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def add_months(d: dt.date, months: int) -> dt.date:
    """Shift by calendar months, clamping the day to the target month's length."""
    index = d.year * 12 + (d.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return dt.date(year, month, day)


def next_weekday(weekday: int, today: dt.date) -> dt.date:
    """Next date falling on ``weekday`` (0=Monday), strictly after ``today``."""
    ahead = (weekday - today.weekday()) % 7 or 7
    return today + dt.timedelta(days=ahead)


def parse_due_date(text: Optional[str], today: Optional[dt.date] = None) -> Optional[dt.date]:
    """Resolve user due-date text; empty text means no due date.

    Accepts dd-mm (current year), dd-mm-YYYY, today / tomorrow / next week /
    next month and bare weekday names.
    """
    today = today or dt.date.today()
    s = (text or "").strip().lower()
    if not s:
        return None
    if s == "today":
        return today
    if s == "tomorrow":
        return today + dt.timedelta(days=1)
    if s == "next week":
        return today + dt.timedelta(days=7)
    if s == "next month":
        return add_months(today, 1)
    if s in WEEKDAYS:
        return next_weekday(WEEKDAYS.index(s), today)
    m = DATE_RE.match(s)
    if not m:
        raise InputValidationError(f"Invalid date {text!r} (expected dd-mm or dd-mm-YYYY)")
    year = int(m.group(3)) if m.group(3) else today.year
    try:
        return dt.date(year, int(m.group(2)), int(m.group(1)))
    except ValueError as exc:
        raise InputValidationError(f"Invalid date {text!r}: {exc}") from exc


def is_valid_due_date(text: str) -> bool:
    try:
        parse_due_date(text)
    except InputValidationError:
        return False
    return True


def format_date(d: Optional[dt.date]) -> str:
    return d.strftime(DATE_FORMAT) if d else ""


# -----------------------------
# Ordering
# -----------------------------
_EPOCH = dt.datetime(1970, 1, 1)
_MICROSECOND = dt.timedelta(microseconds=1)


def _newest_first(task: Task) -> int:
    return -((task.created - _EPOCH) // _MICROSECOND)


# Each key starts with the completion flag so open tasks always lead.
SORT_PRESETS: Dict[SortingMethod, Dict[str, object]] = {
    SortingMethod.PRIORITY: {
        'name': 'Priority ↓ → Created ↓',
        'key': lambda t: (t.completed, -t.priority, _newest_first(t)),
    },
    SortingMethod.DUE: {
        'name': 'Due ↑ (none last) → Created ↓',
        'key': lambda t: (t.completed, t.due is None, t.due or dt.date.max, _newest_first(t)),
    },
    SortingMethod.CREATED: {
        'name': 'Created ↓',
        'key': lambda t: (t.completed, _newest_first(t)),
    },
}


def sort_tasks(tasks: List[Task], method: SortingMethod) -> List[Task]:
    """Sort in place (stable) and return the same list for chaining."""
    key_func = SORT_PRESETS[method]['key']
    tasks.sort(key=key_func)  # type: ignore[arg-type]
    return tasks


# -----------------------------
# Markdown export
# -----------------------------
def task_to_markdown(task: Task) -> str:
    checkbox = "[x]" if task.completed else "[ ]"
    due = format_date(task.due) or "never"
    return (
        f"- {checkbox} ({priority_symbol(task.priority)}) {_sanitize_cell_text(task.title)} "
        f"(due: {due}) {progress_bar(task.progress)} "
        f"% {task.created.strftime(TIMESTAMP_FORMAT)} % {task.id}\n"
    )


def export_to_markdown(tasks: Sequence[Task], path: str) -> None:
    """Rewrite ``path`` with one checklist line per task, in the given order."""
    path = os.path.expanduser(path)
    directory = os.path.dirname(path)
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write("".join(task_to_markdown(t) for t in tasks))
    logger.info("Exported %d tasks to %s", len(tasks), path)


# -----------------------------
# UI helpers (fragments only)
# -----------------------------
PROGRESS_BAR_WIDTH = 8
EMPTY_HINT = "No tasks yet. Press a to add one."

BASE_STYLE: Dict[str, str] = {
    'row.marker': 'bold #ffd75f',
    'row.priority': 'bold #ff8787',
    'row.priority.none': '#5f5f5f',
    'row.title': '',
    'row.title.done': 'strike #8a8a8a',
    'row.meta': '#8a8a8a',
    'row.progress': '#87d7ff',
    'row.progress.done': '#87ff5f',
    'menu': '#8a8a8a',
    'menu.key': 'bold #ffd75f',
    'message': 'bold #ffd787',
    'empty': 'italic #8a8a8a',
}

DUE_PALETTE: Dict[str, str] = {
    'future': 'ansigreen',
    'today': 'ansiyellow',
    'past': 'ansired',
    'done': 'ansibrightblack',
}


def _sanitize_cell_text(s: Optional[str]) -> str:
    return (s or "").replace("\n", " ").replace("\r", " ")


def priority_symbol(priority: int) -> str:
    return "!" * priority if priority > 0 else "_"


def progress_bar(progress: Progress) -> str:
    filled = progress.bar_cells
    return "[" + "#" * filled + " " * (PROGRESS_BAR_WIDTH - filled) + "]"


def display_progress(task: Task) -> str:
    # Completed tasks always show a full bar, whatever progress was stored.
    return progress_bar(Progress.FULL if task.completed else task.progress)


def color_for_due(due: dt.date, today: dt.date, completed: bool = False,
                  palette: Optional[Dict[str, str]] = None) -> str:
    palette = palette or DUE_PALETTE
    if completed:
        return palette.get('done', DUE_PALETTE['done'])
    if due > today:
        return palette.get('future', DUE_PALETTE['future'])
    if due == today:
        return palette.get('today', DUE_PALETTE['today'])
    return palette.get('past', DUE_PALETTE['past'])


Fragments = List[Tuple[str, str]]


def task_fragments(task: Task, selected: bool, today: dt.date) -> Fragments:
    """Return (style, text) tuples for one list row."""
    frags: Fragments = [
        ('class:row.marker', '>' if selected else ' '),
        ('', ' '),
        ('class:row.priority' if task.priority else 'class:row.priority.none', priority_symbol(task.priority)),
        ('', ' '),
        ('class:row.title.done' if task.completed else 'class:row.title', _sanitize_cell_text(task.title)),
    ]
    if task.due is not None:
        frags.append(('class:row.meta', ' - Due: '))
        frags.append((color_for_due(task.due, today, task.completed), format_date(task.due)))
    frags.append(('class:row.meta', ' - Progress: '))
    frags.append(('class:row.progress.done' if task.completed else 'class:row.progress', display_progress(task)))
    return frags


MENU_LINES: List[Fragments] = [
    [('', '')],
    [('class:menu', '-' * 91)],
    [('class:menu.key', 'a'), ('class:menu', ': add      '), ('class:menu.key', 'm'), ('class:menu', ': export to markdown')],
    [('class:menu.key', 'e'), ('class:menu', ': edit     '), ('class:menu.key', 'x'), ('class:menu', ': toggle done/undone')],
    [('class:menu.key', 's'), ('class:menu', ': sort     '), ('class:menu.key', '±'), ('class:menu', ': change priority')],
    [('class:menu.key', 'z'), ('class:menu', ': delete   '), ('class:menu.key', 'Z'), ('class:menu', ': delete all completed')],
    [('class:menu.key', '↵'), ('class:menu', ': exit     '), ('class:menu.key', '←→'), ('class:menu', ': change progress')],
]

SORT_MENU_LINES: List[Fragments] = [
    [('class:menu.key', 'p'), ('class:menu', ': sort by priority   '), ('class:menu.key', 'c'), ('class:menu', ': sort by date of creation')],
    [('class:menu.key', 'd'), ('class:menu', ': sort by due date   '), ('class:menu.key', 'Backspace'), ('class:menu', ': go back')],
]


# -----------------------------
# Terminal
# -----------------------------
FLUSH_TIMEOUT = 0.05  # seconds to wait for the rest of a split escape sequence


class Terminal:
    """Line-oriented screen over prompt_toolkit input/output.

    Keys are read one at a time in raw mode; everything else (clearing,
    cursor visibility, styled lines) goes through the prompt_toolkit Output.
    """

    def __init__(self, input: Optional[Input] = None, output: Optional[Output] = None,
                 style: Optional[Style] = None):
        self._input = input
        self.output = output or create_output()
        self.style = style or Style.from_dict(BASE_STYLE)
        self._pending: List[str] = []

    @property
    def input(self) -> Input:
        if self._input is None:
            self._input = create_input()
        return self._input

    def clear(self) -> None:
        self.output.erase_screen()
        self.output.cursor_goto(0, 0)
        self.output.flush()

    def clear_last_lines(self, count: int) -> None:
        if count <= 0:
            return
        self.output.write_raw("\r")
        self.output.cursor_up(count)
        self.output.erase_down()
        self.output.flush()

    def hide_cursor(self) -> None:
        self.output.hide_cursor()
        self.output.flush()

    def show_cursor(self) -> None:
        self.output.show_cursor()
        self.output.flush()

    @contextmanager
    def hidden_cursor(self) -> Iterator["Terminal"]:
        """Hide the cursor for the duration of the block; always show it again."""
        self.hide_cursor()
        try:
            yield self
        finally:
            self.show_cursor()

    def write_line(self, line: Union[str, Fragments] = "") -> None:
        frags = [('', line)] if isinstance(line, str) else line
        print_formatted_text(FormattedText(frags), style=self.style, output=self.output)
        self.output.flush()

    def read_key(self) -> str:
        """Block until one key press is available and return its key name."""
        if not self._pending:
            self._fill_pending()
        key = self._pending.pop(0)
        if key == Keys.ControlC:
            raise KeyboardInterrupt
        return key

    def _fill_pending(self) -> None:
        inp = self.input
        partial = False
        with inp.raw_mode():
            while not self._pending:
                if inp.closed:
                    raise EOFError("terminal input closed")
                timeout = FLUSH_TIMEOUT if partial else None
                ready, _, _ = select.select([inp.fileno()], [], [], timeout)
                if ready:
                    presses = inp.read_keys()
                    partial = not presses
                else:
                    presses = inp.flush_keys()
                    partial = False
                self._pending.extend(kp.key for kp in presses)


# -----------------------------
# Action resolver
# -----------------------------
class KeyEvent(enum.Enum):
    BACK = "back"
    SORT = "sort"
    NAVIGATE_UP = "navigate_up"
    NAVIGATE_DOWN = "navigate_down"
    TOGGLE_READ = "toggle_read"
    DELETE = "delete"
    DELETE_COMPLETED = "delete_completed"
    INCREASE_PRIORITY = "increase_priority"
    DECREASE_PRIORITY = "decrease_priority"
    INCREASE_PROGRESS = "increase_progress"
    DECREASE_PROGRESS = "decrease_progress"
    EDIT = "edit"
    ADD = "add"
    EXPORT = "export"


class ActionKind(enum.Enum):
    TOGGLE_READ = "toggle_read"
    DELETE = "delete"
    DELETE_COMPLETED = "delete_completed"
    INCREASE_PRIORITY = "increase_priority"
    DECREASE_PRIORITY = "decrease_priority"
    INCREASE_PROGRESS = "increase_progress"
    DECREASE_PROGRESS = "decrease_progress"
    EDIT = "edit"
    ADD = "add"
    EXPORT = "export"
    SORT = "sort"
    RELOAD = "reload"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    sort: Optional[SortingMethod] = None  # set only when kind is SORT

    @classmethod
    def of(cls, kind: ActionKind) -> "Action":
        if kind is ActionKind.SORT:
            raise ValueError("use Action.sort_by() for sort actions")
        return cls(kind)

    @classmethod
    def sort_by(cls, method: SortingMethod) -> "Action":
        return cls(ActionKind.SORT, method)


RELOAD = Action(ActionKind.RELOAD)

KEY_EVENTS: Dict[str, KeyEvent] = {
    Keys.ControlM: KeyEvent.BACK,  # Enter
    Keys.ControlJ: KeyEvent.BACK,
    'm': KeyEvent.EXPORT,
    'a': KeyEvent.ADD,
    'e': KeyEvent.EDIT,
    's': KeyEvent.SORT,
    'x': KeyEvent.TOGGLE_READ,
    'z': KeyEvent.DELETE,
    'Z': KeyEvent.DELETE_COMPLETED,
    '+': KeyEvent.INCREASE_PRIORITY,
    '-': KeyEvent.DECREASE_PRIORITY,
    Keys.Left: KeyEvent.DECREASE_PROGRESS,
    Keys.Right: KeyEvent.INCREASE_PROGRESS,
    Keys.Up: KeyEvent.NAVIGATE_UP,
    Keys.Down: KeyEvent.NAVIGATE_DOWN,
}

SORT_KEYS: Dict[str, SortingMethod] = {
    'p': SortingMethod.PRIORITY,
    'd': SortingMethod.DUE,
    'c': SortingMethod.CREATED,
}
SORT_CANCEL_KEYS = {Keys.ControlH, Keys.Backspace}
CONFIRM_KEYS = {'y'}
REFUSE_KEYS = {Keys.ControlM, Keys.ControlJ, 'n', 'N'}

# Events that become an action without any follow-up prompt.
DIRECT_ACTIONS: Dict[KeyEvent, ActionKind] = {
    KeyEvent.TOGGLE_READ: ActionKind.TOGGLE_READ,
    KeyEvent.INCREASE_PRIORITY: ActionKind.INCREASE_PRIORITY,
    KeyEvent.DECREASE_PRIORITY: ActionKind.DECREASE_PRIORITY,
    KeyEvent.INCREASE_PROGRESS: ActionKind.INCREASE_PROGRESS,
    KeyEvent.DECREASE_PROGRESS: ActionKind.DECREASE_PROGRESS,
    KeyEvent.EDIT: ActionKind.EDIT,
    KeyEvent.ADD: ActionKind.ADD,
}


def wait_key_event(terminal: Terminal) -> KeyEvent:
    """Show the menu and block until a mapped key is pressed."""
    for line in MENU_LINES:
        terminal.write_line(line)
    while True:
        event = KEY_EVENTS.get(terminal.read_key())
        if event is not None:
            return event


def wait_sort_key(terminal: Terminal) -> Optional[SortingMethod]:
    """Sort sub-menu; None when the user backs out."""
    for line in SORT_MENU_LINES:
        terminal.write_line(line)
    while True:
        key = terminal.read_key()
        if key in SORT_CANCEL_KEYS:
            return None
        if key in SORT_KEYS:
            return SORT_KEYS[key]


def wait_confirm(terminal: Terminal, message: str) -> bool:
    terminal.write_line([('class:message', f"{message} [y/N]")])
    while True:
        key = terminal.read_key()
        if key in CONFIRM_KEYS:
            return True
        if key in REFUSE_KEYS:
            return False


# -----------------------------
# Navigation
# -----------------------------
EXPORT_PAUSE = 0.4  # seconds the "Exporting..." notice stays up


def get_pos_overflow(position: int, size: int) -> int:
    """Clamp a cursor into the list; 0 for an empty list."""
    if size == 0:
        return 0
    if position >= size:
        return size - 1
    return position


def next_position(position: int, size: int) -> int:
    if size == 0:
        return 0
    return (position + 1) % size


def prev_position(position: int, size: int) -> int:
    if size == 0:
        return 0
    if position == 0:
        return size - 1
    return position - 1


NavigationResult = Optional[Tuple[int, Action]]


class Navigator:
    """Draws the task list and turns key presses into (cursor, Action) pairs."""

    def __init__(self, terminal: Terminal, today: Optional[dt.date] = None):
        self.terminal = terminal
        self.today = today

    def render(self, tasks: Sequence[Task], position: int) -> None:
        today = self.today or dt.date.today()
        self.terminal.clear()
        if not tasks:
            self.terminal.write_line([('class:empty', EMPTY_HINT)])
            return
        for idx, task in enumerate(tasks):
            self.terminal.write_line(task_fragments(task, idx == position, today))

    def navigate(self, tasks: Sequence[Task], position: int) -> NavigationResult:
        """Run the read-act loop until an action or Back; None means Back."""
        size = len(tasks)
        pos = get_pos_overflow(position, size)
        with self.terminal.hidden_cursor():
            while True:
                self.render(tasks, pos)
                event = wait_key_event(self.terminal)
                logger.debug("key event %s at %d/%d", event.value, pos, size)
                if event is KeyEvent.BACK:
                    return None
                if event is KeyEvent.NAVIGATE_DOWN:
                    pos = next_position(pos, size)
                    continue
                if event is KeyEvent.NAVIGATE_UP:
                    pos = prev_position(pos, size)
                    continue
                return self._resolve(event, pos)

    def _resolve(self, event: KeyEvent, pos: int) -> Tuple[int, Action]:
        if event is KeyEvent.SORT:
            self.terminal.clear_last_lines(len(MENU_LINES))
            method = wait_sort_key(self.terminal)
            if method is None:
                return pos, RELOAD
            return 0, Action.sort_by(method)
        if event in (KeyEvent.DELETE, KeyEvent.DELETE_COMPLETED):
            self.terminal.clear_last_lines(len(MENU_LINES))
            single = event is KeyEvent.DELETE
            if wait_confirm(self.terminal, "Confirm deletion?" if single else "Confirm deletions?"):
                return pos, Action.of(ActionKind.DELETE if single else ActionKind.DELETE_COMPLETED)
            return pos, RELOAD
        if event is KeyEvent.EXPORT:
            self.terminal.clear_last_lines(len(MENU_LINES))
            self.terminal.write_line([('class:message', "Exporting...")])
            time.sleep(EXPORT_PAUSE)
            return pos, Action.of(ActionKind.EXPORT)
        return pos, Action.of(DIRECT_ACTIONS[event])


# -----------------------------
# Prompts
# -----------------------------
DUE_DATE_VALIDATOR = Validator.from_callable(
    is_valid_due_date,
    error_message="Invalid date! Use dd-mm(-YYYY), today, tomorrow, next week, next month or a weekday",
    move_cursor_to_end=True,
)
PRIORITY_VALIDATOR = Validator.from_callable(
    lambda s: not s.strip() or (s.strip().isdigit() and int(s.strip()) <= MAX_PRIORITY),
    error_message=f"Priority must be between 0 and {MAX_PRIORITY}",
    move_cursor_to_end=True,
)
PRIORITY_COMPLETER = WordCompleter([str(p) for p in range(MAX_PRIORITY + 1)])


class Prompter:
    """Line prompts for the add and edit flows."""

    def __init__(self, style: Optional[Style] = None):
        self.style = style

    def title(self, default: str = "") -> str:
        return prompt("Title (leave empty to go back): ", default=default, style=self.style).strip()

    def due_date(self, default: str = "") -> str:
        text = prompt(
            "Due date [dd-mm(-YYYY)]: ",
            default=default,
            validator=DUE_DATE_VALIDATOR,
            validate_while_typing=False,
            style=self.style,
        )
        return text.strip().lower()

    def priority(self, default: int = 0) -> int:
        text = prompt(
            f"Priority [0-{MAX_PRIORITY}]: ",
            default=str(default),
            validator=PRIORITY_VALIDATOR,
            validate_while_typing=False,
            completer=PRIORITY_COMPLETER,
            style=self.style,
        )
        text = text.strip()
        return int(text) if text else default


# -----------------------------
# Session
# -----------------------------
TASK_MUTATORS: Dict[ActionKind, Callable[[Task], None]] = {
    ActionKind.TOGGLE_READ: Task.toggle_completed,
    ActionKind.INCREASE_PRIORITY: Task.increase_priority,
    ActionKind.DECREASE_PRIORITY: Task.decrease_priority,
    ActionKind.INCREASE_PROGRESS: Task.increase_progress,
    ActionKind.DECREASE_PROGRESS: Task.decrease_progress,
}


class Session:
    """Outer loop: load, sort, navigate, apply the returned action, repeat."""

    def __init__(self, db: TaskDB, cfg: Config, terminal: Terminal, prompter: Prompter,
                 today: Optional[dt.date] = None):
        self.db = db
        self.cfg = cfg
        self.terminal = terminal
        self.prompter = prompter
        self.today = today
        self.navigator = Navigator(terminal, today=today)
        self.sort_method = cfg.default_sort
        self.position = 0

    def load(self) -> List[Task]:
        return sort_tasks(self.db.all(), self.sort_method)

    def run(self) -> None:
        while True:
            tasks = self.load()
            result = self.navigator.navigate(tasks, self.position)
            if result is None:
                if self.cfg.export_on_exit:
                    export_to_markdown(tasks, self.cfg.md_file)
                logger.info("Session finished with %d tasks", len(tasks))
                return
            self.position, action = result
            self.apply(action, tasks)

    def apply(self, action: Action, tasks: Sequence[Task]) -> None:
        kind = action.kind
        logger.debug("apply %s at %d", kind.value, self.position)
        if kind is ActionKind.RELOAD:
            return
        if kind is ActionKind.SORT:
            self.sort_method = action.sort or self.sort_method
            logger.info("Sort: %s", SORT_PRESETS[self.sort_method]['name'])
            return
        if kind is ActionKind.ADD:
            self.add_task()
            return
        if kind is ActionKind.EXPORT:
            export_to_markdown(tasks, self.cfg.md_file)
            return
        if not tasks:
            return
        if kind is ActionKind.DELETE_COMPLETED:
            removed = self.db.delete_completed()
            logger.info("Deleted %d completed tasks", removed)
            return
        task = self._stored_task(tasks)
        if task is None:
            return
        if kind is ActionKind.EDIT:
            self.edit_task(task)
        elif kind is ActionKind.DELETE:
            self.db.delete(task.id)
        else:
            TASK_MUTATORS[kind](task)
            self.db.update(task)

    def _stored_task(self, tasks: Sequence[Task]) -> Optional[Task]:
        # The displayed list may be stale; act on the stored record by id.
        shown = tasks[get_pos_overflow(self.position, len(tasks))]
        task = self.db.get(shown.id)
        if task is None:
            logger.warning("Task %s vanished before it could be updated", shown.id)
        return task

    def _ask_fields(self, title: str = "", due: Optional[dt.date] = None,
                    priority: int = 0) -> Optional[Tuple[str, Optional[dt.date], int]]:
        self.terminal.show_cursor()
        self.terminal.clear()
        title = self.prompter.title(title)
        if not title:
            return None
        due_text = self.prompter.due_date(format_date(due))
        new_due = parse_due_date(due_text, self.today)
        new_priority = clamp_priority(self.prompter.priority(priority))
        return title, new_due, new_priority

    def add_task(self) -> Optional[Task]:
        fields = self._ask_fields()
        if fields is None:
            return None
        title, due, priority = fields
        task = Task(title=title, priority=priority, due=due)
        self.db.insert(task)
        return task

    def edit_task(self, task: Task) -> bool:
        fields = self._ask_fields(task.title, task.due, task.priority)
        if fields is None:
            return False
        task.title, task.due, task.priority = fields
        self.db.update(task)
        return True


# -----------------------------
# CLI
# -----------------------------
def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Terminal personal task tracker")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to YAML config (created with defaults if missing)")
    ap.add_argument("--db", help="Path to sqlite DB (overrides config)")
    ap.add_argument("--sort", choices=[m.value for m in SortingMethod], help="Initial sort method")
    ap.add_argument("--log-level", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--export", metavar="PATH", help="Write the markdown export to PATH and exit")
    ap.add_argument("--no-ui", action="store_true", help="Print a one-line summary and exit")
    args = ap.parse_args(argv)

    try:
        write_default_config(args.config)
        cfg = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 1
    if args.db:
        cfg.db_path = os.path.expanduser(args.db)
    if args.sort:
        cfg.default_sort = parse_sort_method(args.sort)
    if args.log_level:
        cfg.log_level = args.log_level

    setup_logging(cfg.log_file, cfg.log_level)
    try:
        db = TaskDB(cfg.db_path)
    except StorageError as e:
        logger.exception("Cannot open database")
        print(str(e), file=sys.stderr)
        return 1

    try:
        if args.export:
            tasks = sort_tasks(db.all(), cfg.default_sort)
            export_to_markdown(tasks, args.export)
            print(f"Wrote markdown export to {args.export}")
            return 0
        if args.no_ui:
            total, done = db.counts()
            print(f"Tasks: {total} (done {done})")
            return 0

        terminal = Terminal()
        session = Session(db, cfg, terminal, Prompter(style=terminal.style))
        terminal.clear()
        try:
            session.run()
        finally:
            terminal.clear()
        return 0
    except (KeyboardInterrupt, EOFError):
        logger.info("Interrupted")
        return 130
    except (TrackerError, OSError) as e:
        logger.exception("Session aborted: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
