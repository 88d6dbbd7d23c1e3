import json
import math
import sys
from pathlib import Path

import pytest

# Ensure src is on sys.path for module imports
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
assert SRC.exists(), f"Source path not found: {SRC}"
sys.path.insert(0, str(SRC))

from conescan.replay import validate_log_integrity  # noqa: E402
from conescan.sim import assert_metrics, main, run_closed_loop  # noqa: E402


def test_sim_closed_loop_recovers_cone_positions(tmp_path):
    out_dir = str(tmp_path / 'sim_out')

    out = run_closed_loop(frames=130, fps=10, cones=5, seed=0, out_dir=out_dir)

    for k in (
        'mean_position_error_mm',
        'max_position_error_mm',
        'cluster_count',
        'cone_count',
        'captures',
        'session_complete',
        'frame_log',
        'eval_json',
    ):
        assert k in out, f"missing key {k} in run_closed_loop output"

    assert out['session_complete']
    assert out['captures'] == 6
    assert out['cluster_count'] == out['cone_count'] == 5
    assert 0.0 < out['confidence'] <= 1.0
    assert_metrics(out, max_mean_position_error_mm=3.0, max_position_error_mm=6.0)

    assert Path(out['eval_json']).exists()
    evaluation = json.loads(Path(out['eval_json']).read_text())
    assert evaluation['log_valid'] is True
    assert len(evaluation['ground_truth_mm']) == 5

    rep = validate_log_integrity(out['frame_log'])
    assert rep['valid']
    assert rep['stats']['captures'] == 6


def test_sim_too_few_frames_leaves_session_incomplete(tmp_path):
    out = run_closed_loop(frames=15, fps=10, cones=3, seed=2, out_dir=str(tmp_path / 'short'))

    assert out['session_complete'] is False
    assert out['captures'] == 1
    assert out['cluster_count'] == 0
    assert math.isnan(out['mean_position_error_mm'])
    with pytest.raises(AssertionError, match='session did not complete'):
        assert_metrics(out, max_mean_position_error_mm=3.0)


def test_assert_metrics_error_message_includes_metric_name():
    summary = {
        'session_complete': True,
        'mean_position_error_mm': 4.0,
        'max_position_error_mm': 9.0,
        'matched_cones': 5,
        'cone_count': 5,
    }
    with pytest.raises(AssertionError) as exc:
        assert_metrics(summary, max_mean_position_error_mm=1.0)
    assert 'mean_position_error_mm' in str(exc.value)

    with pytest.raises(AssertionError) as exc:
        assert_metrics(summary, max_mean_position_error_mm=5.0, max_position_error_mm=8.0)
    assert 'max_position_error_mm' in str(exc.value)


def test_main_runs_and_rejects_bad_arguments(tmp_path, capsys):
    rc = main(['--frames', '110', '--cones', '3', '--out-dir', str(tmp_path / 'cli')])
    assert rc == 0
    printed = capsys.readouterr().out
    assert 'cluster_count: 3' in printed
    assert (tmp_path / 'cli' / 'eval.json').exists()

    assert main(['--frames', '0']) == 2
    assert main(['--marker-dropout', '1.5']) == 2
