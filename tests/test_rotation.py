import logging

import numpy as np
import pytest

from pcreg.config import ScalePolicy
from pcreg.estimation import CrossCovariance, Deviations, Mean
from pcreg.rotation import (ClosedFormRotation, PowerMethodRotation, closed_form_rotation,
                            horn_matrix, power_method, scale_from_bundle)
from pcreg.transforms import axis_angle_to_quaternion, quaternion_to_matrix, rotation_angle_deg, quaternion_multiply


def bundle_with(moving_energy, fixed_energy):
    bundle = np.zeros(11)
    bundle[9] = moving_energy
    bundle[10] = fixed_energy
    return bundle


def test_scale_from_bundle():
    assert scale_from_bundle(bundle_with(4.0, 9.0)) == pytest.approx(1.5)
    assert scale_from_bundle(bundle_with(2.0, 2.0)) == pytest.approx(1.0)


def test_degenerate_scale_policies(caplog):
    bundle = bundle_with(0.0, 1.0)
    with caplog.at_level(logging.WARNING):
        assert scale_from_bundle(bundle, ScalePolicy.CLAMP) == 1.0
    assert 'Degenerate scale' in caplog.text
    assert np.isnan(scale_from_bundle(bundle, 'nan'))
    with pytest.raises(FloatingPointError):
        scale_from_bundle(bundle, ScalePolicy.RAISE)


def random_orthogonal(seed):
    Q, _ = np.linalg.qr(np.random.default_rng(seed).normal(size=(4, 4)))
    return Q


@pytest.mark.parametrize('eigenvalues', [(-5.0, 1.0, 2.0, 3.0), (-3.0, 1.0, 2.0, 3.0)])
def test_power_method_finds_largest_eigenvalue(eigenvalues):
    Q = random_orthogonal(7)
    N = Q @ np.diag(eigenvalues) @ Q.T
    x, value = power_method(N)

    assert value == pytest.approx(3.0, abs=1e-6)
    assert abs(x @ Q[:, 3]) == pytest.approx(1.0, abs=1e-6)


def test_power_method_on_tied_diagonal():
    x, value = power_method(np.diag([-3.0, 1.0, 2.0, 3.0]))
    assert value == pytest.approx(3.0, abs=1e-6)
    np.testing.assert_allclose(np.abs(x), [0, 0, 0, 1], atol=1e-6)


def test_power_method_zero_matrix():
    x, value = power_method(np.zeros((4, 4)))
    assert value == 0.0
    np.testing.assert_array_equal(x, [0, 0, 0, 1])


def test_horn_matrix_of_quarter_turn():
    # x -> y under a quarter turn about z
    moving = np.eye(3)
    fixed = moving @ quaternion_to_matrix(axis_angle_to_quaternion([0, 0, 1], 90.0)).T
    S = moving.T @ fixed
    x, _ = power_method(horn_matrix(S))
    expected = axis_angle_to_quaternion([0, 0, 1], 90.0)
    assert abs(x @ expected) == pytest.approx(1.0, abs=1e-9)


def test_power_method_agrees_with_closed_form(blob):
    moving = blob(512, seed=5)[:, :3].astype(np.float64)
    moving -= moving.mean(axis=0)
    R = quaternion_to_matrix(axis_angle_to_quaternion([0.3, -1.0, 0.5], 37.0))
    noise = np.random.default_rng(6).normal(scale=0.5, size=moving.shape)
    fixed = moving @ R.T + noise
    S = moving.T @ fixed

    R_closed = closed_form_rotation(S)
    x, _ = power_method(horn_matrix(S))
    np.testing.assert_allclose(quaternion_to_matrix(x), R_closed, atol=1e-8)
    np.testing.assert_allclose(R_closed, R, atol=1e-2)
    assert np.linalg.det(R_closed) == pytest.approx(1.0)


def test_closed_form_rejects_reflection():
    S = np.diag([1.0, 1.0, -1.0])
    R = closed_form_rotation(S)
    assert np.linalg.det(R) == pytest.approx(1.0)
    np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-12)


def run_pipeline(queue, upload, fixed, moving, extractor_class):
    m = len(fixed)
    d_f, d_m = upload(fixed), upload(moving)
    mean = Mean(queue, d_f, d_m, m)
    deviations = Deviations(queue, d_f, d_m, mean.d_out, m)
    covariance = CrossCovariance(queue, deviations.d_out_dev_m, deviations.d_out_dev_f, m)
    extractor = extractor_class(queue, mean.d_out, covariance.d_out)
    mean.run()
    deviations.run()
    covariance.run()
    extractor.run()
    return extractor


@pytest.mark.parametrize('extractor_class', [ClosedFormRotation, PowerMethodRotation])
def test_recovers_known_similarity(queue, upload, blob, unwarp, known_transform, extractor_class):
    q, t = known_transform
    s = 1.2
    fixed = blob(4096, seed=8)
    moving = unwarp(fixed, q, t, s)

    extractor = run_pipeline(queue, upload, fixed, moving, extractor_class)
    q_k, t_k, s_k = extractor.result

    error = quaternion_multiply(q_k, q * [-1, -1, -1, 1])
    assert rotation_angle_deg(error) < 0.01
    np.testing.assert_allclose(t_k, t, atol=0.05)
    assert s_k == pytest.approx(s, rel=1e-3)
    np.testing.assert_allclose(extractor.R_k, quaternion_to_matrix(q), atol=1e-3)


def test_extractors_agree(queue, upload, blob, unwarp):
    q = axis_angle_to_quaternion([1.0, -2.0, 0.5], 25.0)
    t = np.array([-3.0, 12.0, 40.0])
    fixed = blob(2048, seed=9)
    moving = unwarp(fixed, q, t, 0.8)

    closed = run_pipeline(queue, upload, fixed, moving, ClosedFormRotation)
    power = run_pipeline(queue, upload, fixed, moving, PowerMethodRotation)

    np.testing.assert_allclose(power.q_k, closed.q_k, atol=1e-5)
    np.testing.assert_allclose(power.t_k, closed.t_k, atol=0.05)
    assert power.s_k == pytest.approx(closed.s_k, rel=1e-5)


def test_identical_clouds_give_identity(queue, upload, blob):
    fixed = blob(1024, seed=10)
    extractor = run_pipeline(queue, upload, fixed, fixed.copy(), PowerMethodRotation)
    assert rotation_angle_deg(extractor.q_k) < 1e-3
    np.testing.assert_allclose(extractor.t_k, 0.0, atol=1e-2)
    assert extractor.s_k == pytest.approx(1.0, rel=1e-5)


def test_run_return_values(queue, upload, blob):
    fixed = blob(256, seed=12)
    closed = run_pipeline(queue, upload, fixed, fixed.copy(), ClosedFormRotation)
    assert closed.run() is None
    assert queue.pending == 0

    power = run_pipeline(queue, upload, fixed, fixed.copy(), PowerMethodRotation)
    event = power.run()
    assert event.complete
    assert queue.pending == 0
