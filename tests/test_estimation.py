import numpy as np
import pytest

from pcreg.errors import ConfigurationError
from pcreg.estimation import CrossCovariance, Deviations, Mean


def pairs(blob, m=4096):
    fixed = blob(m, seed=1)
    moving = blob(m, seed=2)
    return fixed, moving


def weight_buffers(upload, w):
    return upload(w.astype(np.float32)), upload(np.array([w.astype(np.float64).sum()]))


def test_regular_mean(queue, upload, blob):
    fixed, moving = pairs(blob)
    mean = Mean(queue, upload(fixed), upload(moving), len(fixed))
    mean.run()
    out = mean.read()

    np.testing.assert_allclose(out[0:3], fixed[:, :3].astype(np.float64).mean(axis=0), rtol=1e-5, atol=1e-3)
    np.testing.assert_allclose(out[4:7], moving[:, :3].astype(np.float64).mean(axis=0), rtol=1e-5, atol=1e-3)
    assert out[3] == 0 and out[7] == 0


def test_weighted_mean(queue, upload, blob):
    fixed, moving = pairs(blob)
    w = np.random.default_rng(3).uniform(0.1, 1.0, size=len(fixed))
    d_w, d_sw = weight_buffers(upload, w)
    mean = Mean(queue, upload(fixed), upload(moving), len(fixed), d_w, d_sw)
    mean.run()
    out = mean.read()

    expected_f = (fixed[:, :3] * w[:, None]).sum(axis=0) / w.sum()
    expected_m = (moving[:, :3] * w[:, None]).sum(axis=0) / w.sum()
    np.testing.assert_allclose(out[0:3], expected_f, rtol=1e-4, atol=1e-3)
    np.testing.assert_allclose(out[4:7], expected_m, rtol=1e-4, atol=1e-3)


def test_unit_weights_reproduce_regular_mean(queue, upload, blob):
    fixed, moving = pairs(blob)
    d_f, d_m = upload(fixed), upload(moving)
    regular = Mean(queue, d_f, d_m, len(fixed))
    weighted = Mean(queue, d_f, d_m, len(fixed), *weight_buffers(upload, np.ones(len(fixed))))
    regular.run()
    weighted.run()
    np.testing.assert_allclose(weighted.read(), regular.read(), rtol=1e-6)


def test_mean_needs_weight_sum(queue, upload, blob):
    fixed, moving = pairs(blob, 16)
    with pytest.raises(ConfigurationError):
        Mean(queue, upload(fixed), upload(moving), 16, d_in_w=upload(np.ones(16, dtype=np.float32)))


def test_deviations(queue, upload, blob):
    fixed, moving = pairs(blob, 256)
    mean = np.array([1, 2, 3, 0, 4, 5, 6, 0], dtype=np.float32)
    deviations = Deviations(queue, upload(fixed), upload(moving), upload(mean), 256)
    deviations.run()
    dev_f, dev_m = deviations.read()

    np.testing.assert_allclose(dev_f[:, :3], fixed[:, :3] - mean[0:3], rtol=1e-6)
    np.testing.assert_allclose(dev_m[:, :3], moving[:, :3] - mean[4:7], rtol=1e-6)
    assert np.all(dev_f[:, 3] == 0) and np.all(dev_m[:, 3] == 0)


def reference_bundle(dev_m, dev_f, c, w=None):
    w = np.ones(len(dev_m)) if w is None else w
    mp = c * dev_m[:, :3].astype(np.float64)
    fp = c * dev_f[:, :3].astype(np.float64)
    S = np.einsum('i,ij,ik->jk', w, mp, fp)
    return np.concatenate([S.ravel(), [np.sum(w * (mp ** 2).sum(axis=1)), np.sum(w * (fp ** 2).sum(axis=1))]])


def deviation_pairs(blob, m=4096):
    fixed, moving = pairs(blob, m)
    dev_f = np.zeros((m, 4), dtype=np.float32)
    dev_m = np.zeros((m, 4), dtype=np.float32)
    dev_f[:, :3] = fixed[:, :3] - fixed[:, :3].mean(axis=0)
    dev_m[:, :3] = moving[:, :3] - moving[:, :3].mean(axis=0)
    return dev_f, dev_m


def test_regular_covariance(queue, upload, blob):
    dev_f, dev_m = deviation_pairs(blob)
    covariance = CrossCovariance(queue, upload(dev_m), upload(dev_f), len(dev_f), c=1e-6)
    covariance.run()
    out = covariance.read()

    expected = reference_bundle(dev_m, dev_f, 1e-6)
    np.testing.assert_allclose(out, expected, rtol=1e-4, atol=1e-5 * np.abs(expected).max())


def test_weighted_covariance(queue, upload, blob):
    dev_f, dev_m = deviation_pairs(blob)
    w = np.random.default_rng(4).uniform(0.1, 1.0, size=len(dev_f)).astype(np.float32)
    covariance = CrossCovariance(queue, upload(dev_m), upload(dev_f), len(dev_f), c=1e-6, d_in_w=upload(w))
    covariance.run()
    out = covariance.read()

    expected = reference_bundle(dev_m, dev_f, 1e-6, w.astype(np.float64))
    np.testing.assert_allclose(out, expected, rtol=1e-4, atol=1e-5 * np.abs(expected).max())


def test_unit_weights_reproduce_regular_covariance(queue, upload, blob):
    dev_f, dev_m = deviation_pairs(blob)
    d_f, d_m = upload(dev_f), upload(dev_m)
    regular = CrossCovariance(queue, d_m, d_f, len(dev_f))
    weighted = CrossCovariance(queue, d_m, d_f, len(dev_f), d_in_w=upload(np.ones(len(dev_f), dtype=np.float32)))
    regular.run()
    weighted.run()
    np.testing.assert_allclose(weighted.read(), regular.read(), rtol=1e-6)


def test_scaling_is_mutable(queue, upload, blob):
    dev_f, dev_m = deviation_pairs(blob, 1024)
    covariance = CrossCovariance(queue, upload(dev_m), upload(dev_f), 1024, c=1e-6)
    covariance.run()
    small = covariance.read()

    covariance.scaling = 1e-3
    covariance.run()
    large = covariance.read()
    np.testing.assert_allclose(large, small * 1e6, rtol=1e-4, atol=1e-5 * np.abs(large).max())

    with pytest.raises(ConfigurationError):
        covariance.scaling = 0
