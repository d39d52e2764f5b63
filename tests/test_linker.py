import unittest

from correlate.linker import filter_allowed_keys, find_issue_keys_in_text, group_commits_by_ticket, ticket_key_from_branch
from correlate.models import TicketWorkBundle, is_orphan_key
from normalize.models import CommitRecord, RepoScanResult


def _commit(sha, branch, message='work', email='dev@example.com', keys=()):
    return CommitRecord(
        sha=sha, short_sha=sha[:7], repo='api', branch=branch, author_name='Dev', author_email=email,
        message=message, timestamp='2025-03-01T10:00:00+00:00', ticket_keys=tuple(keys),
    )


class TestLinker(unittest.TestCase):
    def test_find_keys(self):
        text = "Fixed PROJ-123 and addressed PROJ-456 in this change"
        keys = find_issue_keys_in_text(text)
        self.assertEqual(keys, ['PROJ-123', 'PROJ-456'])

    def test_find_keys_dedups_in_order(self):
        self.assertEqual(find_issue_keys_in_text("AB-2 then AB-1 then AB-2 again"), ['AB-2', 'AB-1'])

    def test_key_shapes(self):
        self.assertEqual(find_issue_keys_in_text("X-10 and A2B-7"), ['X-10', 'A2B-7'])
        # all-zero numbers and lowercase projects are not keys
        self.assertEqual(find_issue_keys_in_text("X-0, X-000 and proj-12"), [])
        self.assertEqual(find_issue_keys_in_text("X-00_tmp"), [])
        self.assertEqual(find_issue_keys_in_text("X-01 and X-100"), ['X-01', 'X-100'])
        self.assertEqual(find_issue_keys_in_text(""), [])

    def test_all_zero_key_in_branch_not_bound(self):
        self.assertIsNone(ticket_key_from_branch('feature/PROJ-0_hotfix'))
        self.assertEqual(ticket_key_from_branch('feature/PROJ-0_hotfix-PROJ-5'), 'PROJ-5')

    def test_ticket_key_from_branch(self):
        self.assertEqual(ticket_key_from_branch('feature/PROJ-42-login-page'), 'PROJ-42')
        self.assertEqual(ticket_key_from_branch('PROJ-7'), 'PROJ-7')
        self.assertIsNone(ticket_key_from_branch('main'))
        self.assertIsNone(ticket_key_from_branch(''))

    def test_filter_allowed_keys(self):
        allowed, skipped = filter_allowed_keys(['PROJ-1', 'OTHER-2', 'proj-3'], ['proj'])
        self.assertEqual(allowed, ['PROJ-1', 'proj-3'])
        self.assertEqual(skipped, ['OTHER-2'])


class TestGroupCommitsByTicket(unittest.TestCase):
    def test_union_of_branch_key_and_message_keys(self):
        c = _commit('a' * 40, 'feature/PROJ-1-x', message='PROJ-2 follow-up', keys=['PROJ-2'])
        scan = RepoScanResult(repo='api', path=None, commits=[c])
        bundles = group_commits_by_ticket([scan], {('api', 'feature/PROJ-1-x'): 'PROJ-1'})
        self.assertEqual(sorted(bundles), ['PROJ-1', 'PROJ-2'])
        self.assertEqual(bundles['PROJ-1']['api'].commit_shas, ['a' * 40])
        self.assertEqual(bundles['PROJ-2']['api'].commit_shas, ['a' * 40])

    def test_branch_key_and_message_key_identical_counted_once(self):
        c = _commit('b' * 40, 'PROJ-1-fix', message='PROJ-1 fix', keys=['PROJ-1'])
        scan = RepoScanResult(repo='api', path=None, commits=[c])
        bundles = group_commits_by_ticket([scan], {('api', 'PROJ-1-fix'): 'PROJ-1'})
        self.assertEqual(list(bundles), ['PROJ-1'])
        self.assertEqual(len(bundles['PROJ-1']['api']), 1)

    def test_orphans_grouped_by_branch(self):
        c1 = _commit('c' * 40, 'spike')
        c2 = _commit('d' * 40, 'spike', email='other@example.com')
        scan = RepoScanResult(repo='api', path=None, commits=[c1, c2])
        bundles = group_commits_by_ticket([scan], {})
        self.assertEqual(list(bundles), ['branch:spike'])
        self.assertTrue(is_orphan_key('branch:spike'))
        bundle = bundles['branch:spike']['api']
        self.assertEqual(bundle.author_emails, {'dev@example.com', 'other@example.com'})
        self.assertEqual(bundle.branch_names, {'spike'})

    def test_same_sha_on_two_branches_kept_once(self):
        c1 = _commit('e' * 40, 'PROJ-3-a', keys=['PROJ-3'])
        c2 = _commit('e' * 40, 'PROJ-3-b', keys=['PROJ-3'])
        scan = RepoScanResult(repo='api', path=None, commits=[c1, c2])
        bundle = group_commits_by_ticket([scan], {})['PROJ-3']['api']
        self.assertEqual(len(bundle), 1)
        self.assertEqual(bundle.branch_names, {'PROJ-3-a', 'PROJ-3-b'})

    def test_two_keys_two_branches_one_entry_per_bundle(self):
        sha = '9' * 40
        on_feature = _commit(sha, 'feature/PROJ-4-x', message='PROJ-4 PROJ-5 shared fix', keys=['PROJ-4', 'PROJ-5'])
        on_release = _commit(sha, 'release/2.1', message='PROJ-4 PROJ-5 shared fix', keys=['PROJ-4', 'PROJ-5'])
        scan = RepoScanResult(repo='api', path=None, commits=[on_feature, on_release])
        bundles = group_commits_by_ticket([scan], {('api', 'feature/PROJ-4-x'): 'PROJ-4'})
        self.assertEqual(sorted(bundles), ['PROJ-4', 'PROJ-5'])
        for key in ('PROJ-4', 'PROJ-5'):
            bundle = bundles[key]['api']
            self.assertEqual(bundle.commit_shas, [sha])
            self.assertEqual(bundle.branch_names, {'feature/PROJ-4-x', 'release/2.1'})


class TestTicketWorkBundle(unittest.TestCase):
    def test_primary_branch_most_commits_then_name(self):
        b = TicketWorkBundle()
        b.add(_commit('1' * 40, 'b-branch'))
        b.add(_commit('2' * 40, 'a-branch'))
        self.assertEqual(b.primary_branch(), 'a-branch')
        b.add(_commit('3' * 40, 'b-branch'))
        self.assertEqual(b.primary_branch(), 'b-branch')
        self.assertEqual([c.sha for c in b.commits_on('b-branch')], ['1' * 40, '3' * 40])

    def test_empty_bundle_has_no_primary_branch(self):
        self.assertEqual(TicketWorkBundle().primary_branch(), '')


if __name__ == '__main__':
    unittest.main()
