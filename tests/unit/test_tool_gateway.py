"""
Unit tests for the external tool gateway and metric backends.

Tests process error mapping, retry and backoff, cancellation, sample
evaluation and ffmpeg command construction. subprocess is always mocked.
"""

import subprocess
import unittest
from fractions import Fraction
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

from lazy_cutplan.core.modules.analysis.media_utils import MediaDescriptor
from lazy_cutplan.core.modules.analysis.timeline import Timeline
from lazy_cutplan.core.modules.errors import (
    OutputParseError, SampleEvaluationError, SearchCancelled, ToolFailed, ToolNotFound, ToolTimeout
)
from lazy_cutplan.core.modules.optimization.sample_windows import extract_windows
from lazy_cutplan.core.modules.system.cancellation import CancellationToken
from lazy_cutplan.core.modules.system import tool_gateway
from lazy_cutplan.core.modules.system.tool_backends import SsimBackend, VmafBackend, get_backend
from lazy_cutplan.core.modules.system.tool_gateway import (
    ExternalToolGateway, GatewayEvaluator, RetryPolicy, SampleMeasurement, ToolOutput, exponential_backoff
)

POPEN = 'lazy_cutplan.core.modules.system.tool_gateway.subprocess.Popen'

NO_WAIT = RetryPolicy(max_attempts=3, backoff=lambda attempt: 0)


def mock_process(returncode=0, stdout="", stderr=""):
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate.return_value = (stdout, stderr)
    proc.poll.return_value = returncode
    return proc


def cut_window():
    timeline = Timeline.build([(0, 250, "main"), (250, 500, "excluded"), (500, 1500, "main")], 25, 1500)
    return extract_windows(timeline, 20, 25)[0]


def media():
    return MediaDescriptor(path=Path("input.mkv"), fps=Fraction(25), total_frames=1500, audio_tracks=1,
                           duration=60.0, size_bytes=600000)


class TestRetryPolicy(unittest.TestCase):
    """Test backoff and retry decisions."""

    def test_exponential_backoff(self):
        delay = exponential_backoff(2.0, 2.0, 10.0)
        self.assertEqual([delay(n) for n in (1, 2, 3, 4)], [2.0, 4.0, 8.0, 10.0])

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=2)
        self.assertTrue(policy.should_retry(ToolTimeout("slow"), 1))
        self.assertFalse(policy.should_retry(ToolTimeout("slow"), 2))
        self.assertFalse(policy.should_retry(ValueError("bad"), 1))

    def test_from_config(self):
        policy = RetryPolicy.from_config({'retry_attempts': 5, 'retry_backoff': 1})
        self.assertEqual(policy.max_attempts, 5)
        self.assertEqual(policy.delay(1), 1.0)
        self.assertEqual(policy.delay(3), 4.0)

    def test_invalid_attempts(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)


class TestRun(unittest.TestCase):
    """Test process execution and error mapping."""

    def setUp(self):
        self.gateway = ExternalToolGateway(retry_policy=NO_WAIT, timeout=5)

    @patch(POPEN)
    def test_success(self, mock_popen):
        mock_popen.return_value = mock_process(stdout="out", stderr="err")
        output = self.gateway.run(["ffmpeg", "-version"])
        self.assertEqual(output.returncode, 0)
        self.assertEqual(output.args, ("ffmpeg", "-version"))
        self.assertIn("out", output.combined)
        self.assertIn("err", output.combined)
        self.assertEqual(self.gateway.cancel_token.running(), 0)

    @patch(POPEN)
    def test_missing_binary(self, mock_popen):
        mock_popen.side_effect = FileNotFoundError("ffmpeg")
        with self.assertRaises(ToolNotFound) as ctx:
            self.gateway.run(["ffmpeg", "-version"])
        self.assertEqual(ctx.exception.tool, "ffmpeg")

    @patch(POPEN)
    def test_timeout_kills_process(self, mock_popen):
        proc = mock_process()
        proc.communicate.side_effect = [subprocess.TimeoutExpired("ffmpeg", 5), ("", "")]
        mock_popen.return_value = proc
        with self.assertRaises(ToolTimeout) as ctx:
            self.gateway.run(["ffmpeg", "-i", "x"])
        proc.kill.assert_called_once()
        self.assertEqual(ctx.exception.timeout, 5)

    @patch(POPEN)
    def test_nonzero_exit(self, mock_popen):
        mock_popen.return_value = mock_process(returncode=1, stderr="a\nb\nc\nInvalid argument")
        with self.assertRaises(ToolFailed) as ctx:
            self.gateway.run(["ffmpeg", "-i", "x"])
        self.assertEqual(ctx.exception.exit_code, 1)
        self.assertEqual(ctx.exception.excerpt, "b | c | Invalid argument")

    @patch(POPEN)
    def test_cancelled_before_start(self, mock_popen):
        self.gateway.cancel_token.cancel()
        with self.assertRaises(SearchCancelled):
            self.gateway.run(["ffmpeg"])
        mock_popen.assert_not_called()


class TestRetry(unittest.TestCase):
    """Test the retry loop."""

    def test_retries_until_policy_gives_up(self):
        gateway = ExternalToolGateway(retry_policy=NO_WAIT)
        operation = Mock(side_effect=ToolFailed("boom"))
        with self.assertRaises(ToolFailed):
            gateway.retry(operation, "op")
        self.assertEqual(operation.call_count, 3)

    def test_succeeds_after_transient_failure(self):
        gateway = ExternalToolGateway(retry_policy=NO_WAIT)
        operation = Mock(side_effect=[ToolTimeout("slow"), "ok"])
        self.assertEqual(gateway.retry(operation, "op"), "ok")
        self.assertEqual(operation.call_count, 2)

    def test_non_tool_errors_not_retried(self):
        gateway = ExternalToolGateway(retry_policy=NO_WAIT)
        operation = Mock(side_effect=ValueError("bad"))
        with self.assertRaises(ValueError):
            gateway.retry(operation, "op")
        self.assertEqual(operation.call_count, 1)

    def test_cancel_interrupts_backoff(self):
        token = CancellationToken()
        gateway = ExternalToolGateway(retry_policy=RetryPolicy(max_attempts=3, backoff=lambda n: 30),
                                      cancel_token=token)

        def operation():
            token.cancel()
            raise ToolFailed("boom")

        with self.assertRaises(SearchCancelled):
            gateway.retry(operation, "op")

    @patch(POPEN)
    def test_run_with_retry(self, mock_popen):
        mock_popen.side_effect = [mock_process(returncode=1), mock_process(stdout="ffmpeg version 6.1")]
        gateway = ExternalToolGateway(retry_policy=NO_WAIT)
        output = gateway.run_with_retry(["ffmpeg", "-version"])
        self.assertEqual(output.stdout, "ffmpeg version 6.1")
        self.assertEqual(mock_popen.call_count, 2)


class TestEvaluateSample(unittest.TestCase):
    """Test one encode + measure round."""

    def setUp(self):
        self.gateway = ExternalToolGateway(retry_policy=RetryPolicy(max_attempts=2, backoff=lambda n: 0))
        self.backend = VmafBackend()
        self.window = cut_window()
        self.encoded_paths = []

    def fake_run(self, args, timeout=None):
        if "-crf" in args:
            output = Path(args[-1])
            self.encoded_paths.append(output)
            output.write_bytes(b"x" * 1234)
            return ToolOutput(tuple(args), 0, "", "", 0.1)
        return ToolOutput(tuple(args), 0, "", "[libvmaf] VMAF score: 93.25", 0.1)

    def test_measurement(self):
        with patch.object(self.gateway, 'run', side_effect=self.fake_run):
            measurement = self.gateway.evaluate_sample(self.backend, media(), self.window, 24)

        self.assertEqual(measurement.score, 93.25)
        self.assertEqual(measurement.encoded_size, 1234)
        # 10000 bytes/s over a 20 s window
        self.assertEqual(measurement.reference_size, 200000)
        self.assertFalse(self.encoded_paths[0].exists())

    def test_measurement_logged_with_sizes(self):
        with patch.object(self.gateway, 'run', side_effect=self.fake_run):
            with patch.object(tool_gateway.logger, 'sample') as mock_sample:
                self.gateway.evaluate_sample(self.backend, media(), self.window, 24)
        message = mock_sample.call_args.args[0]
        self.assertIn("sample 0 @ 24", message)
        self.assertIn("1.21 KB of 195.31 KB", message)

    def test_failure_wrapped_after_retries(self):
        run = Mock(side_effect=ToolFailed("ffmpeg exited with code 1", tool="ffmpeg", exit_code=1))
        with patch.object(self.gateway, 'run', run):
            with self.assertRaises(SampleEvaluationError) as ctx:
                self.gateway.evaluate_sample(self.backend, media(), self.window, 24)
        self.assertEqual(run.call_count, 2)
        self.assertEqual(ctx.exception.window_index, 0)
        self.assertEqual(ctx.exception.parameter, 24)
        self.assertIsInstance(ctx.exception.cause, ToolFailed)

    def test_empty_encode_is_parse_error(self):
        run = Mock(return_value=ToolOutput((), 0, "", "", 0.0))
        with patch.object(self.gateway, 'run', run):
            with self.assertRaises(SampleEvaluationError) as ctx:
                self.gateway.evaluate_sample(self.backend, media(), self.window, 24)
        self.assertIsInstance(ctx.exception.cause, OutputParseError)

    def test_gateway_evaluator(self):
        evaluator = GatewayEvaluator(self.gateway, self.backend, media())
        with patch.object(self.gateway, 'run', side_effect=self.fake_run):
            measurement = evaluator.evaluate(self.window, 30)
        self.assertEqual(measurement.score, 93.25)

    def test_size_ratio_without_reference(self):
        self.assertEqual(SampleMeasurement(90.0, 10, 0).size_ratio, 0.0)
        self.assertEqual(SampleMeasurement(90.0, 10, 40).size_ratio, 0.25)


class TestBackends(unittest.TestCase):
    """Test command construction and score parsing."""

    def setUp(self):
        self.window = cut_window()

    def test_encode_args(self):
        args = VmafBackend(preset="slow").encode_args(Path("in.mkv"), self.window, 24.0, Path("out.mkv"))
        self.assertEqual(args[0], "ffmpeg")
        fc = args[args.index("-filter_complex") + 1]
        self.assertIn("[0:v:0]trim=start=0:end=10", fc)
        self.assertIn("[0:v:0]trim=start=20:end=30", fc)
        self.assertEqual(args[args.index("-crf") + 1], "24")
        self.assertEqual(args[args.index("-preset") + 1], "slow")
        self.assertEqual(args[args.index("-c:v") + 1], "libx265")
        self.assertEqual(args[-3:], ["-an", "-sn", "out.mkv"])

    def test_measure_args_uses_cut_reference(self):
        args = VmafBackend(vmaf_threads=4).measure_args(Path("in.mkv"), self.window, Path("enc.mkv"))
        self.assertEqual(args[args.index("-i") + 1], "enc.mkv")
        lavfi = args[args.index("-filter_complex") + 1]
        self.assertTrue(lavfi.startswith("[1:v:0]trim=start=0:end=10"))
        self.assertTrue(lavfi.endswith("[0:v:0][refoutv]libvmaf=n_threads=4"))
        self.assertEqual(args[-3:], ["-f", "null", "-"])

    def test_vmaf_parse(self):
        backend = VmafBackend()
        self.assertEqual(backend.parse_score("[Parsed_libvmaf_0 @ 0x1] VMAF score: 95.123456"), 95.123456)
        self.assertEqual(backend.parse_score('{"pooled_metrics": {"vmaf": {"min": 80.1, "mean": 94.5}}}'), 94.5)
        with self.assertRaises(OutputParseError):
            backend.parse_score("no score here")

    def test_ssim_parse_last_summary(self):
        backend = SsimBackend()
        text = ("[Parsed_ssim_0 @ 0x1] SSIM Y:0.99 (20.0) U:0.98 (17.0) V:0.98 (17.0) All:0.950000 (13.0)\n"
                "[Parsed_ssim_0 @ 0x1] SSIM Y:0.99 (20.0) U:0.98 (17.0) V:0.98 (17.0) All:0.987500 (19.0)\n")
        self.assertAlmostEqual(backend.parse_score(text), 98.75)
        self.assertEqual(backend.metric_filter(), "ssim")
        with self.assertRaises(OutputParseError):
            backend.parse_score("")

    def test_get_backend(self):
        self.assertIsInstance(get_backend("ssim"), SsimBackend)
        self.assertEqual(get_backend("vmaf", encoder="libsvtav1").encoder, "libsvtav1")
        with self.assertRaises(ValueError):
            get_backend("psnr")

    def test_tool_version_fetched_once(self):
        backend = VmafBackend()
        gateway = Mock()
        gateway.run_with_retry.return_value = ToolOutput((), 0, "ffmpeg version 6.1\nbuilt with gcc", "", 0.0)
        self.assertEqual(backend.tool_version(gateway), "ffmpeg version 6.1")
        self.assertEqual(backend.tool_version(gateway), "ffmpeg version 6.1")
        gateway.run_with_retry.assert_called_once()

    def test_identity(self):
        gateway = Mock()
        gateway.run_with_retry.return_value = ToolOutput((), 0, "ffmpeg version 7.0", "", 0.0)
        evaluator = GatewayEvaluator(gateway, VmafBackend(preset="fast"), media())
        self.assertEqual(evaluator.identity(), {"tool": "ffmpeg version 7.0", "config": "vmaf:libx265:fast:"})


if __name__ == '__main__':
    unittest.main()
