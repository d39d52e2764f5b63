"""
Tests for the incremental summary chain: reuse, extend and regenerate decisions, chain links,
and per-ticket failure isolation in the batch loop.
"""
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from correlate.models import TicketWorkBundle
from normalize.models import CommitRecord
from storage.database import Database
from storage.summaries import append_summary, latest_summaries, latest_summary, summaries_for_run, summary_history
from summarize.chain import EXTEND, REGENERATE, REUSE, advance_chain, plan_summary, summarize_bundles
from summarize.invoke import SummarizationError, SummaryResult

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _commit(sha, branch='feature/PROJ-1', email='dev@example.com'):
    return CommitRecord(
        sha=sha, short_sha=sha[:7], repo='api', branch=branch, author_name='Dev', author_email=email,
        message=f'PROJ-1 {sha}', timestamp='2025-03-09T10:00:00+00:00', ticket_keys=('PROJ-1',),
    )


def _bundle(*shas):
    b = TicketWorkBundle()
    for sha in shas:
        b.add(_commit(sha))
    return b


class FakeSummarizer:
    def __init__(self, text='summary', fail_for=()):
        self.text = text
        self.fail_for = set(fail_for)
        self.requests = []

    def summarize(self, request):
        self.requests.append(request)
        if request.ticket_key in self.fail_for:
            raise SummarizationError(f"{request.ticket_key}: boom")
        return SummaryResult(f"{self.text} #{len(self.requests)}", session_id='sess-1')


class TestPlanSummary(unittest.TestCase):
    def _previous(self, age, shas):
        return append_summary(self.db, 'PROJ-1', 'api', 'old text', shas, created_at=(NOW - age).isoformat())

    def setUp(self):
        self.db = Database()

    def tearDown(self):
        self.db.close()

    def test_no_previous_regenerates(self):
        plan = plan_summary(None, _bundle('a1'), NOW)
        self.assertEqual(plan.action, REGENERATE)
        self.assertEqual([c.sha for c in plan.commits], ['a1'])

    def test_recent_without_new_commits_reuses(self):
        prev = self._previous(timedelta(days=2), ['a1', 'a2'])
        plan = plan_summary(prev, _bundle('a1', 'a2'), NOW)
        self.assertEqual(plan.action, REUSE)
        self.assertEqual(plan.commits, [])

    def test_recent_with_new_commits_extends_with_only_new(self):
        prev = self._previous(timedelta(days=2), ['a1'])
        plan = plan_summary(prev, _bundle('a1', 'a2'), NOW)
        self.assertEqual(plan.action, EXTEND)
        self.assertEqual([c.sha for c in plan.commits], ['a2'])

    def test_old_previous_regenerates_full_set(self):
        prev = self._previous(timedelta(days=8), ['a1'])
        plan = plan_summary(prev, _bundle('a1', 'a2'), NOW)
        self.assertEqual(plan.action, REGENERATE)
        self.assertEqual([c.sha for c in plan.commits], ['a1', 'a2'])

    def test_window_is_inclusive(self):
        prev = self._previous(timedelta(days=7), ['a1'])
        self.assertEqual(plan_summary(prev, _bundle('a1'), NOW).action, REUSE)


class TestAdvanceChain(unittest.TestCase):
    def setUp(self):
        self.db = Database()
        self.run_id = self.db.start_run()

    def tearDown(self):
        self.db.close()

    def test_reuse_clones_text_without_calling_summarizer(self):
        prev = append_summary(self.db, 'PROJ-1', 'api', 'old text', ['a1'], session_id='s0',
                              created_at=(NOW - timedelta(days=1)).isoformat())
        fake = FakeSummarizer()
        outcome = advance_chain(self.db, 'PROJ-1', 'api', _bundle('a1'), self.run_id, fake, now=NOW)
        self.assertEqual(outcome.action, REUSE)
        self.assertEqual(fake.requests, [])
        head = latest_summary(self.db, 'PROJ-1', 'api')
        self.assertEqual(head.summary_text, 'old text')
        self.assertEqual(head.previous_id, prev.id)
        self.assertEqual(head.session_id, 's0')
        self.assertEqual(head.commit_shas, ('a1',))
        self.assertEqual(head.created_at, NOW.isoformat())

    def test_extend_covers_previous_and_new_shas(self):
        prev = append_summary(self.db, 'PROJ-1', 'api', 'old text', ['a1'], created_at=(NOW - timedelta(days=1)).isoformat())
        fake = FakeSummarizer()
        outcome = advance_chain(self.db, 'PROJ-1', 'api', _bundle('a1', 'a2'), self.run_id, fake, now=NOW)
        self.assertEqual(outcome.action, EXTEND)
        self.assertEqual(len(fake.requests), 1)
        self.assertIn('Previous Analysis', fake.requests[0].prompt)
        self.assertIn('old text', fake.requests[0].prompt)
        self.assertEqual(outcome.summary.commit_shas, ('a1', 'a2'))
        self.assertEqual(outcome.summary.previous_id, prev.id)
        self.assertEqual(outcome.summary.session_id, 'sess-1')

    def test_regenerate_links_to_stale_head(self):
        prev = append_summary(self.db, 'PROJ-1', 'api', 'old text', ['a1'], created_at=(NOW - timedelta(days=30)).isoformat())
        fake = FakeSummarizer()
        outcome = advance_chain(self.db, 'PROJ-1', 'api', _bundle('a2'), self.run_id, fake, now=NOW)
        self.assertEqual(outcome.action, REGENERATE)
        self.assertNotIn('Previous Analysis', fake.requests[0].prompt)
        self.assertEqual(outcome.summary.commit_shas, ('a2',))
        self.assertEqual(outcome.summary.previous_id, prev.id)

    def test_chain_is_append_only(self):
        advance_chain(self.db, 'PROJ-1', 'api', _bundle('a1'), self.run_id, FakeSummarizer(), now=NOW)
        advance_chain(self.db, 'PROJ-1', 'api', _bundle('a1', 'a2'), self.run_id, FakeSummarizer(), now=NOW + timedelta(hours=1))
        advance_chain(self.db, 'PROJ-1', 'api', _bundle('a1', 'a2'), self.run_id, FakeSummarizer(), now=NOW + timedelta(hours=2))
        history = summary_history(self.db, 'PROJ-1', 'api')
        self.assertEqual(len(history), 3)
        self.assertIsNone(history[0].previous_id)
        self.assertEqual(history[1].previous_id, history[0].id)
        self.assertEqual(history[2].previous_id, history[1].id)
        self.assertEqual(history[0].summary_text, 'summary #1')
        self.assertEqual(len(summaries_for_run(self.db, self.run_id)), 3)


class TestSummarizeBundles(unittest.TestCase):
    def setUp(self):
        self.db = Database()
        self.run_id = self.db.start_run()

    def tearDown(self):
        self.db.close()

    def test_failure_is_isolated_per_ticket(self):
        bundles = {'PROJ-1': {'api': _bundle('a1')}, 'PROJ-2': {'api': _bundle('b1')}}
        fake = FakeSummarizer(fail_for=['PROJ-1'])
        outcomes = summarize_bundles(self.db, bundles, self.run_id, fake, repo_paths={}, now=NOW)
        self.assertEqual([(o.ticket_key, o.ok) for o in outcomes], [('PROJ-1', False), ('PROJ-2', True)])
        self.assertIn('boom', outcomes[0].error)
        self.assertIsNone(latest_summary(self.db, 'PROJ-1', 'api'))
        self.assertIsNotNone(latest_summary(self.db, 'PROJ-2', 'api'))

    def test_checkout_wraps_summarizer_call_and_skips_reuse(self):
        append_summary(self.db, 'PROJ-2', 'api', 'kept', ['b1'], created_at=(NOW - timedelta(hours=1)).isoformat())
        bundles = {'PROJ-1': {'api': _bundle('a1')}, 'PROJ-2': {'api': _bundle('b1')}}
        calls = []

        class _Checkout:
            def __init__(self, path, branch):
                self.path, self.branch = path, branch

            def __enter__(self):
                calls.append(('enter', self.path, self.branch))
                return self.branch

            def __exit__(self, *exc):
                calls.append(('exit', self.path, self.branch))
                return False

        fake = FakeSummarizer()
        with patch('summarize.chain.checked_out', _Checkout):
            outcomes = summarize_bundles(self.db, bundles, self.run_id, fake, repo_paths={'api': '/src/api'}, now=NOW)

        self.assertEqual([o.action for o in outcomes], [REGENERATE, REUSE])
        self.assertEqual(calls, [('enter', '/src/api', 'feature/PROJ-1'), ('exit', '/src/api', 'feature/PROJ-1')])
        self.assertEqual(fake.requests[0].cwd, '/src/api')
        self.assertIn('currently on branch `feature/PROJ-1`', fake.requests[0].prompt)

    def test_latest_summaries_returns_heads(self):
        append_summary(self.db, 'PROJ-1', 'api', 'one', ['a1'])
        second = append_summary(self.db, 'PROJ-1', 'api', 'two', ['a1', 'a2'])
        other = append_summary(self.db, 'PROJ-1', 'web', 'web', ['w1'])
        heads = latest_summaries(self.db, ['PROJ-1', 'PROJ-9'])
        self.assertEqual(heads[('PROJ-1', 'api')].id, second.id)
        self.assertEqual(heads[('PROJ-1', 'web')].id, other.id)
        self.assertEqual(len(heads), 2)

    def test_corrupt_sha_list_reads_as_empty(self):
        rec = append_summary(self.db, 'PROJ-1', 'api', 'text', ['a1'])
        with self.db.transaction() as cur:
            cur.execute("UPDATE ticket_summaries SET commit_shas = 'not json' WHERE id = ?", (rec.id,))
        self.assertEqual(latest_summary(self.db, 'PROJ-1', 'api').commit_shas, ())


if __name__ == '__main__':
    unittest.main()
