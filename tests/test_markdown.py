import datetime as dt

import todo_tracker as tt


def _task(**overrides):
    base = dict(
        title='Write report',
        priority=2,
        due=dt.date(2024, 1, 15),
        completed=False,
        progress=tt.Progress.HALF,
        created=dt.datetime(2024, 1, 10, 9, 5, 0),
        id='0b7e-id',
    )
    base.update(overrides)
    return tt.Task(**base)


def test_task_to_markdown_line_format():
    line = tt.task_to_markdown(_task())
    assert line == '- [ ] (!!) Write report (due: 15-01-2024) [####    ] % 2024-01-10T09:05:00.000000 % 0b7e-id\n'


def test_task_to_markdown_completed_without_due_date():
    line = tt.task_to_markdown(_task(completed=True, priority=0, due=None, progress=tt.Progress.QUARTER))
    # the stored progress is written, not the full bar shown on screen
    assert line.startswith('- [x] (_) Write report (due: never) [##      ] % ')


def test_markdown_line_keeps_fields_recoverable():
    task = _task(title='Pay 50% deposit', progress=tt.Progress.THREE_QUARTER)
    line = tt.task_to_markdown(task).rstrip('\n')
    head, created, tid = line.rsplit(' % ', 2)
    assert tid == task.id
    assert dt.datetime.strptime(created, tt.TIMESTAMP_FORMAT) == task.created
    assert head.endswith(tt.progress_bar(task.progress))
    assert 'Pay 50% deposit' in head


def test_export_truncates_and_writes_in_given_order(tmp_path):
    path = tmp_path / 'nested' / 'todo.md'
    first = _task(title='first', id='a')
    second = _task(title='second', id='b')

    tt.export_to_markdown([first, second], str(path))
    lines = path.read_text(encoding='utf-8').splitlines()
    assert [line.rsplit(' % ', 1)[1] for line in lines] == ['a', 'b']

    tt.export_to_markdown([second], str(path))
    assert path.read_text(encoding='utf-8') == tt.task_to_markdown(second)

    tt.export_to_markdown([], str(path))
    assert path.read_text(encoding='utf-8') == ''


def test_titles_with_newlines_stay_on_one_line():
    line = tt.task_to_markdown(_task(title='two\nlines'))
    assert line.count('\n') == 1
    assert '(!!) two lines (due:' in line
