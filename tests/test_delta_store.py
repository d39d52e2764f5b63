import os
import unittest

import pytest

from normalize.models import BranchRecord, CommitRecord, PullRequestSnapshot
from storage.database import Database, chunked
from storage.delta import (
    BranchDelta,
    active_branches,
    branch_ticket_keys,
    get_branch,
    inactive_branches,
    pull_requests_by_branch,
    reconcile,
    store_commits,
    update_branch_pr,
    update_branches,
)
from storage.lock import WriterLockError, writer_lock
from storage.scope import ALL_REPOS, RepoScope


def _commit(n, repo='api', branch='main'):
    sha = f"{n:040x}"
    return CommitRecord(
        sha=sha, short_sha=sha[:7], repo=repo, branch=branch, author_name='Dev', author_email='dev@example.com',
        message=f'change {n}', timestamp=f'2025-03-0{1 + n % 9}T10:00:00+00:00',
    )


def _branch(name, sha='abc'):
    return BranchRecord(name=name, last_commit_sha=sha, last_commit_date='2025-03-01T10:00:00+00:00', last_commit_author_email='dev@example.com')


class TestStoreCommits(unittest.TestCase):
    def setUp(self):
        self.db = Database()
        self.run_id = self.db.start_run()

    def tearDown(self):
        self.db.close()

    def test_second_store_is_a_no_op(self):
        commits = [_commit(i) for i in range(5)]
        first = store_commits(self.db, commits, self.run_id)
        self.assertEqual(len(first.new_commits), 5)
        self.assertEqual(first.existing_count, 0)

        second = store_commits(self.db, commits, self.db.start_run())
        self.assertEqual(second.new_commits, [])
        self.assertEqual(second.existing_count, 5)
        # first_seen_run stays with the run that inserted the commit
        rows = self.db.query('SELECT DISTINCT first_seen_run FROM commits')
        self.assertEqual([r['first_seen_run'] for r in rows], [self.run_id])

    def test_partial_overlap(self):
        store_commits(self.db, [_commit(1), _commit(2)], self.run_id)
        delta = store_commits(self.db, [_commit(2), _commit(3)], self.run_id)
        self.assertEqual([c.sha for c in delta.new_commits], [_commit(3).sha])
        self.assertEqual(delta.existing_count, 1)

    def test_duplicate_sha_in_one_input_inserted_once(self):
        delta = store_commits(self.db, [_commit(1), _commit(1, branch='other')], self.run_id)
        self.assertEqual(len(delta.new_commits), 1)
        self.assertEqual(self.db.query_one('SELECT COUNT(*) AS n FROM commits')['n'], 1)

    def test_small_chunks_cover_every_commit(self):
        commits = [_commit(i) for i in range(23)]
        delta = store_commits(self.db, commits, self.run_id, chunk_size=5)
        self.assertEqual(len(delta.new_commits), 23)
        again = store_commits(self.db, commits, self.run_id, chunk_size=4)
        self.assertEqual(again.existing_count, 23)

    def test_empty_input(self):
        delta = store_commits(self.db, [], self.run_id)
        self.assertEqual(delta.new_commits, [])
        self.assertEqual(delta.existing_count, 0)


class TestReconcile(unittest.TestCase):
    def test_classification(self):
        delta = reconcile(['a', 'b', 'c'], ['a', 'c', 'd'])
        self.assertEqual(delta, BranchDelta(new=['d'], updated=['a', 'c'], gone=['b']))

    def test_empty_observation_marks_everything_gone(self):
        self.assertEqual(reconcile(['x'], []).gone, ['x'])


class TestUpdateBranches(unittest.TestCase):
    def setUp(self):
        self.db = Database()

    def tearDown(self):
        self.db.close()

    def test_mark_sweep(self):
        first = update_branches(self.db, 'api', [_branch('A'), _branch('B'), _branch('C')], now='2025-03-01T00:00:00+00:00')
        self.assertEqual(first.new, ['A', 'B', 'C'])

        second = update_branches(self.db, 'api', [_branch('A', 'def'), _branch('C')], now='2025-03-02T00:00:00+00:00')
        self.assertEqual(second.gone, ['B'])
        self.assertEqual(second.updated, ['A', 'C'])
        self.assertEqual([b.name for b in inactive_branches(self.db, 'api')], ['B'])
        self.assertEqual([b.name for b in active_branches(self.db, 'api')], ['A', 'C'])

        a = get_branch(self.db, 'api', 'A')
        self.assertEqual(a.first_seen, '2025-03-01T00:00:00+00:00')
        self.assertEqual(a.last_seen, '2025-03-02T00:00:00+00:00')
        self.assertEqual(a.last_commit_sha, 'def')
        # rows are never deleted
        self.assertIsNotNone(get_branch(self.db, 'api', 'B'))

    def test_gone_branch_reactivates(self):
        update_branches(self.db, 'api', [_branch('A')])
        update_branches(self.db, 'api', [])
        self.assertFalse(get_branch(self.db, 'api', 'A').is_active)
        delta = update_branches(self.db, 'api', [_branch('A')])
        self.assertEqual(delta.updated, ['A'])
        self.assertTrue(get_branch(self.db, 'api', 'A').is_active)

    def test_repos_are_independent(self):
        update_branches(self.db, 'api', [_branch('main')])
        update_branches(self.db, 'web', [_branch('main')])
        update_branches(self.db, 'web', [])
        self.assertTrue(get_branch(self.db, 'api', 'main').is_active)
        self.assertFalse(get_branch(self.db, 'web', 'main').is_active)

    def test_ticket_keys_bound_from_branch_names(self):
        update_branches(self.db, 'api', [_branch('feature/PROJ-5-x'), _branch('main')])
        update_branches(self.db, 'test-repo', [_branch('PROJ-6')])
        self.assertEqual(branch_ticket_keys(self.db, ['api', 'test-repo']), {
            ('api', 'feature/PROJ-5-x'): 'PROJ-5',
            ('test-repo', 'PROJ-6'): 'PROJ-6',
        })
        scoped = branch_ticket_keys(self.db, ['api', 'test-repo'], RepoScope())
        self.assertEqual(list(scoped), [('api', 'feature/PROJ-5-x')])

    def test_pull_request_snapshot_attached(self):
        update_branches(self.db, 'api', [_branch('feature/PROJ-5-x')])
        snap = PullRequestSnapshot(12, 'Login', 'OPEN', 'http://x/12', 'main', ['Bob'], 1)
        self.assertTrue(update_branch_pr(self.db, 'api', 'feature/PROJ-5-x', snap))
        self.assertFalse(update_branch_pr(self.db, 'api', 'unknown', snap))
        pr = get_branch(self.db, 'api', 'feature/PROJ-5-x').pull_request
        self.assertEqual((pr.pr_id, pr.state, pr.reviewers), (12, 'OPEN', ['Bob']))
        self.assertEqual(list(pull_requests_by_branch(self.db, 'api')), ['feature/PROJ-5-x'])


def test_chunked_sizes():
    assert [list(c) for c in chunked([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 3)) == []
    with pytest.raises(ValueError):
        list(chunked([1], 0))


def test_repo_scope_sql_and_predicate():
    scope = RepoScope(['test-repo', 'sandbox'])
    assert scope.filter(['api', 'sandbox', 'test-repo']) == ['api']
    clause, params = scope.sql('c.repo')
    assert clause == 'c.repo NOT IN (?, ?)'
    assert params == ('sandbox', 'test-repo')
    assert ALL_REPOS.sql() == ('1 = 1', ())
    assert ALL_REPOS('test-repo')


def test_run_lifecycle():
    db = Database()
    try:
        assert db.last_completed_run() is None
        run_id = db.start_run('2025-03-01T00:00:00+00:00')
        db.complete_run(run_id, 2, 10, 4, now='2025-03-01T00:05:00+00:00')
        run = db.last_completed_run()
        assert run['id'] == run_id
        assert (run['repos_scanned'], run['commits_found'], run['new_commits']) == (2, 10, 4)
    finally:
        db.close()


def test_writer_lock_is_exclusive(tmp_path):
    db_path = str(tmp_path / 'data' / 'shipsignal.db')
    with writer_lock(db_path) as lock_path:
        assert os.path.exists(lock_path)
        with pytest.raises(WriterLockError):
            with writer_lock(db_path):
                pass
    # released on exit
    with writer_lock(db_path):
        pass
