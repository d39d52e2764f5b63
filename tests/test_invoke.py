import subprocess
import unittest
from unittest.mock import Mock, patch

from summarize.invoke import CommandSummarizer, SummarizationError, SummaryRequest


def _proc(returncode=0, stdout='', stderr=''):
    proc = Mock()
    proc.returncode = returncode
    proc.stdout = stdout
    proc.stderr = stderr
    return proc


class TestCommandSummarizer(unittest.TestCase):
    def setUp(self):
        self.request = SummaryRequest('PROJ-1', 'api', 'the prompt', cwd='/src/api')

    def test_prompt_is_last_argument_and_stdout_is_text(self):
        summarizer = CommandSummarizer(['summarize-cli', '-p'], timeout_seconds=5)
        with patch('summarize.invoke.subprocess.run', return_value=_proc(stdout='  done  \n', stderr='Session: 1a2b-3c')) as run:
            result = summarizer.summarize(self.request)
        args, kwargs = run.call_args
        self.assertEqual(args[0], ['summarize-cli', '-p', 'the prompt'])
        self.assertEqual(kwargs['cwd'], '/src/api')
        self.assertEqual(kwargs['timeout'], 5)
        self.assertEqual(result.text, 'done')
        self.assertEqual(result.session_id, '1a2b-3c')

    def test_non_zero_exit_raises(self):
        with patch('summarize.invoke.subprocess.run', return_value=_proc(returncode=1, stderr='bad token')):
            with self.assertRaises(SummarizationError) as ctx:
                CommandSummarizer(['x']).summarize(self.request)
        self.assertIn('bad token', str(ctx.exception))

    def test_empty_output_raises(self):
        with patch('summarize.invoke.subprocess.run', return_value=_proc(stdout='   ')):
            with self.assertRaises(SummarizationError):
                CommandSummarizer(['x']).summarize(self.request)

    def test_timeout_and_missing_binary_raise(self):
        with patch('summarize.invoke.subprocess.run', side_effect=subprocess.TimeoutExpired(['x'], 1)):
            with self.assertRaises(SummarizationError):
                CommandSummarizer(['x'], timeout_seconds=1).summarize(self.request)
        with patch('summarize.invoke.subprocess.run', side_effect=FileNotFoundError('x')):
            with self.assertRaises(SummarizationError):
                CommandSummarizer(['x']).summarize(self.request)

    def test_empty_command_rejected(self):
        with self.assertRaises(ValueError):
            CommandSummarizer([])


if __name__ == '__main__':
    unittest.main()
