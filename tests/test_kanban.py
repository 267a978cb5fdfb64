import pytest

from taskabana.kanban import (
    AppendToEnd,
    Column,
    ICEBUCKET_TAG,
    InsertBefore,
    MovePlan,
    MoveToEnd,
    SiblingIndex,
    Task,
    TaskStatus,
    categorize,
    parse_notes,
    plan_column_move,
    plan_move,
    plan_relabel,
    serialize_notes,
)

IP = Column.IN_PROGRESS
ICE = Column.ICEBUCKET


def _abc():
    return SiblingIndex({(None, IP): ['A', 'B', 'C']})


def test_categorize_rules():
    assert categorize({'id': '1', 'status': 'completed', 'notes': '#icebucket'}) is Column.COMPLETED
    assert categorize({'id': '1', 'status': 'needsAction', 'notes': 'later\n#IceBucket'}) is Column.ICEBUCKET
    assert categorize({'id': '1', 'status': 'needsAction', 'notes': 'see #icebuckets'}) is Column.ICEBUCKET
    assert categorize({'id': '1', 'status': 'needsAction', 'notes': 'x#icebucket'}) is Column.ICEBUCKET
    assert categorize({'id': '1', 'status': 'needsAction', 'notes': 'ice bucket'}) is Column.IN_PROGRESS
    assert categorize({'id': '1'}) is Column.IN_PROGRESS


@pytest.mark.parametrize('notes', ['x#icebucket', 'see #icebuckets', '##ICEBUCKET', '#ice#icebucketbucket'])
def test_marker_matches_as_substring(notes):
    t = Task.from_api({'id': '1', 'notes': notes})
    assert t.column is ICE
    done = plan_relabel(t, Column.COMPLETED)
    assert '#icebucket' not in done.notes.lower()
    back = plan_relabel(t, IP)
    assert '#icebucket' not in back.notes.lower()
    iced = plan_relabel(t, ICE)
    assert iced.notes.lower().count('#icebucket') == 1


def test_marker_inside_word_is_removed():
    assert plan_relabel({'id': '1', 'notes': 'x#icebucket'}, Column.COMPLETED).notes == 'x'
    assert plan_relabel({'id': '1', 'notes': 'x#icebucket'}, ICE).notes == 'x\n#icebucket'


def test_column_from_str_accepts_legacy_key():
    assert Column.from_str('inprogress') is IP
    assert Column.from_str('Completed') is Column.COMPLETED
    with pytest.raises(ValueError):
        Column.from_str('backlog')


def test_parse_notes_strips_marker_and_keeps_body():
    body, tags = parse_notes('buy milk\n#icebucket')
    assert body == 'buy milk'
    assert tags == frozenset({ICEBUCKET_TAG})

    body, tags = parse_notes('one #icebucket two\nthree')
    assert body == 'one two\nthree'

    body, tags = parse_notes('plain #hashtag stays')
    assert body == 'plain #hashtag stays'
    assert tags == frozenset()


def test_notes_layout_survives_relabel():
    notes = '  indented\n\nlast\n\n'
    assert parse_notes(notes) == (notes, frozenset())
    iced = plan_relabel({'id': '1', 'notes': notes}, ICE)
    assert iced.notes == notes + '\n#icebucket'
    assert plan_relabel({'id': '1', 'notes': iced.notes}, IP).notes == notes
    # only the line that carried the marker is trimmed
    assert parse_notes('  keep\n  #icebucket  \n')[0] == '  keep\n'


def test_serialize_notes_appends_marker_line():
    assert serialize_notes('body', {ICEBUCKET_TAG}) == 'body\n#icebucket'
    assert serialize_notes('', {ICEBUCKET_TAG}) == '#icebucket'
    assert serialize_notes('body', set()) == 'body'


def test_task_from_api_keeps_tags_apart_from_body():
    t = Task.from_api({'id': 'x', 'title': 'T', 'notes': 'n\n#icebucket', 'status': 'needsAction', 'parent': 'p'})
    assert t.notes == 'n'
    assert t.tags == frozenset({ICEBUCKET_TAG})
    assert t.column is ICE
    assert t.to_api()['notes'] == 'n\n#icebucket'
    assert t.to_api()['parent'] == 'p'


# --- append / insert / move-to-end ---

def test_append_to_end_of_non_empty_group():
    assert plan_move(AppendToEnd(column=IP), _abc()) == MovePlan(previous='C', parent=None)


def test_append_to_empty_or_missing_group():
    assert plan_move(AppendToEnd(column=ICE), _abc()).previous is None
    assert plan_move(AppendToEnd(column=IP), {}).previous is None
    assert plan_move(AppendToEnd(column=IP), None).previous is None


def test_append_excludes_moving_task():
    # C is already last; moving it again must not point at itself
    assert plan_move(AppendToEnd(column=IP, task_id='C'), _abc()).previous == 'B'
    assert plan_move(AppendToEnd(column=IP, task_id='A'), SiblingIndex({(None, IP): ['A']})).previous is None


def test_insert_before_scenarios():
    sib = _abc()
    assert plan_move(InsertBefore(task_id='D', column=IP, before_id='B'), sib).previous == 'A'
    assert plan_move(InsertBefore(task_id='D', column=IP, before_id='A'), sib).previous is None
    assert plan_move(InsertBefore(task_id='D', column=IP), sib).previous == 'C'


def test_append_after_delete_scenario():
    sib = SiblingIndex({(None, IP): ['A', 'C']})
    assert plan_move(AppendToEnd(column=IP, task_id='D'), sib).previous == 'C'


def test_insert_before_excludes_moving_task():
    sib = _abc()
    # A moving in front of C: siblings without A are [B, C]
    assert plan_move(InsertBefore(task_id='A', column=IP, before_id='C'), sib).previous == 'B'
    # C moving in front of A lands first
    assert plan_move(InsertBefore(task_id='C', column=IP, before_id='A'), sib).previous is None
    # B in front of C is a no-op position: previous is A
    assert plan_move(InsertBefore(task_id='B', column=IP, before_id='C'), sib).previous == 'A'


def test_insert_before_self_or_unknown_appends():
    sib = _abc()
    assert plan_move(InsertBefore(task_id='B', column=IP, before_id='B'), sib).previous == 'C'
    assert plan_move(InsertBefore(task_id='D', column=IP, before_id='zzz'), sib).previous == 'C'


def test_move_to_end():
    sib = _abc()
    assert plan_move(MoveToEnd(task_id='A', column=IP), sib).previous == 'C'
    assert plan_move(MoveToEnd(task_id='C', column=IP), sib).previous == 'B'


def test_subtask_groups_are_keyed_by_parent():
    sib = SiblingIndex({('P', IP): ['s1', 's2'], (None, IP): ['P']})
    plan = plan_move(InsertBefore(task_id='s3', column=IP, parent='P', before_id='s2'), sib)
    assert plan == MovePlan(previous='s1', parent='P')
    assert plan.to_params() == {'previous': 's1', 'parent': 'P'}
    assert MovePlan().to_params() == {}


@pytest.mark.parametrize('siblings', [
    {(None, IP): None},
    {(None, IP): 5},
    {(None, IP): ['A', None, 7, 'B']},
    object(),
    [],
])
def test_plan_move_tolerates_malformed_lookups(siblings):
    plan = plan_move(InsertBefore(task_id='B', column=IP, before_id='A'), siblings)
    assert plan.previous != 'B'


def test_previous_is_never_the_moving_task():
    ids = ['A', 'B', 'C', 'D']
    sib = SiblingIndex({(None, IP): ids})
    for moving in ids:
        for before in ids + [None, 'nope']:
            plan = plan_move(InsertBefore(task_id=moving, column=IP, before_id=before), sib)
            assert plan.previous != moving
        assert plan_move(MoveToEnd(task_id=moving, column=IP), sib).previous != moving
        assert plan_move(AppendToEnd(column=IP, task_id=moving), sib).previous != moving


def test_plan_move_does_not_mutate_input():
    groups = {(None, IP): ['A', 'B', 'C']}
    plan_move(InsertBefore(task_id='B', column=IP, before_id='A'), groups)
    assert groups == {(None, IP): ['A', 'B', 'C']}


# --- sibling index ---

def test_sibling_index_groups_by_parent_and_column_in_fetch_order():
    tasks = [
        {'id': 'a', 'status': 'needsAction'},
        {'id': 'b', 'status': 'completed'},
        {'id': 'c', 'status': 'needsAction', 'notes': '#icebucket'},
        {'id': 'a1', 'status': 'needsAction', 'parent': 'a'},
        {'id': 'd', 'status': 'needsAction'},
        {'id': 'a2', 'status': 'completed', 'parent': 'a'},
    ]
    idx = SiblingIndex.from_tasks(tasks)
    assert idx.group(None, IP) == ('a', 'd')
    assert idx.group(None, Column.COMPLETED) == ('b',)
    assert idx.group(None, ICE) == ('c',)
    assert idx.group('a', IP) == ('a1',)
    assert idx.group('a', 'completed') == ('a2',)


def test_sibling_index_promotes_orphans():
    idx = SiblingIndex.from_tasks([
        {'id': 'a'},
        {'id': 'x', 'parent': 'gone'},
    ])
    assert idx.group(None, IP) == ('a', 'x')
    assert idx.group('gone', IP) == ()


# --- relabel ---

def test_relabel_to_completed_strips_marker():
    t = Task.from_api({'id': '1', 'notes': 'keep\n#icebucket', 'status': 'needsAction'})
    r = plan_relabel(t, Column.COMPLETED)
    assert r.status is TaskStatus.DONE
    assert r.notes == 'keep'
    assert '#icebucket' not in r.notes
    assert r.to_patch() == {'status': 'completed', 'notes': 'keep'}


def test_relabel_to_icebucket_has_exactly_one_marker():
    t = Task(id='1', notes='x #icebucket y\n#ICEBUCKET')
    r = plan_relabel(t, ICE)
    assert r.status is TaskStatus.OPEN
    assert r.notes.lower().count('#icebucket') == 1
    assert r.notes == 'x y\n#icebucket'


def test_relabel_to_in_progress_reopens():
    t = Task.from_api({'id': '1', 'notes': '#icebucket', 'status': 'completed'})
    r = plan_relabel(t, 'inprogress')
    assert r.status is TaskStatus.OPEN
    assert r.notes == ''


@pytest.mark.parametrize('column', list(Column))
@pytest.mark.parametrize('notes', ['', 'body', 'a\n#icebucket', '#icebucket', '  lead #icebucket trail  '])
def test_relabel_is_idempotent(column, notes):
    t = Task.from_api({'id': '1', 'notes': notes})
    once = plan_relabel(t, column)
    twice = plan_relabel(once.apply(t), column)
    assert once == twice
    again = plan_relabel(Task.from_api({'id': '1', 'notes': once.notes, 'status': once.status.value}), column)
    assert again.notes == once.notes
    assert categorize(once.apply(t)) is column


def test_column_move_composes_relabel_and_append():
    t = Task.from_api({'id': 'B', 'status': 'needsAction'})
    sib = SiblingIndex({(None, IP): ['A', 'B'], (None, ICE): ['X', 'Y']})
    plan = plan_column_move(t, ICE, sib)
    assert plan.relabel.notes == '#icebucket'
    assert plan.move == MovePlan(previous='Y', parent=None)
    plan = plan_column_move(t, Column.COMPLETED, sib)
    assert plan.relabel.status is TaskStatus.DONE
    assert plan.move.previous is None
