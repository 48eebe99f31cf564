import numpy as np
import pytest

from pcreg.compute import CommandQueue, Context, Device
from pcreg.errors import ConfigurationError
from pcreg.primitives import Reduce, Scan, group_count

FLT_EPSILON = np.finfo(np.float32).eps


@pytest.mark.parametrize('cols', [4, 512, 16384])
@pytest.mark.parametrize('op', ['min', 'max'])
def test_reduce_min_max(queue, upload, op, cols):
    data = np.random.default_rng(cols).uniform(-100, 100, size=(3, cols)).astype(np.float32)
    reduce = Reduce(queue, upload(data), cols, 3, op)
    reduce.run()
    expected = data.min(axis=1) if op == 'min' else data.max(axis=1)
    np.testing.assert_array_equal(reduce.read(), expected)


@pytest.mark.parametrize('cols', [4, 512, 16384])
def test_reduce_sum(queue, upload, cols):
    data = np.random.default_rng(1).uniform(0, 1, size=(2, cols)).astype(np.float32)
    reduce = Reduce(queue, upload(data), cols, 2, 'sum')
    reduce.run()
    expected = data.astype(np.float64).sum(axis=1)
    np.testing.assert_allclose(reduce.read(), expected, rtol=4200 * FLT_EPSILON)


def test_reduce_integer_rows(queue, upload):
    data = np.arange(64, dtype=np.int32).reshape(4, 16)
    reduce = Reduce(queue, upload(data), 16, 4, 'min')
    reduce.run()
    np.testing.assert_array_equal(reduce.read(), [0, 16, 32, 48])


def test_reduce_uses_one_launch_for_short_rows(queue, upload):
    short = Reduce(queue, upload(np.ones(512, dtype=np.float32)), 512)
    long = Reduce(queue, upload(np.ones(516, dtype=np.float32)), 516)
    assert short.groups == 1 and short.d_red is None
    assert long.groups == 4 and long.d_red.shape == (1, 4)


def test_reduce_is_deferred(queue, upload, context):
    reduce = Reduce(queue, upload(np.full(16, 2.0, dtype=np.float32)), 16)
    reduce.run()
    assert context.view(reduce.d_out)[0] == 0.0
    assert reduce.read()[0] == 32.0


def test_group_count_rounds_to_multiple_of_four():
    device = Device(wg_multiple=64)
    assert group_count(4, device, 'Reduce') == 1
    assert group_count(2560, device, 'Reduce') == 8
    assert group_count(16384, device, 'Reduce') == 32


@pytest.mark.parametrize('cols, message', [
    (0, 'positive'),
    (6, 'multiple of 4'),
    (1028, 'must not exceed'),
])
def test_reduce_configuration_errors(cols, message):
    context = Context(Device(wg_multiple=4))
    queue = CommandQueue(context)
    d_in = context.alloc(max(cols, 4), np.float32)
    with pytest.raises(ConfigurationError, match=message):
        Reduce(queue, d_in, cols)


def test_reduce_unknown_operation(queue, upload):
    with pytest.raises(ConfigurationError):
        Reduce(queue, upload(np.ones(4, dtype=np.float32)), 4, 1, 'mean')


@pytest.mark.parametrize('cols', [256, 4096, 1028])
@pytest.mark.parametrize('inclusive', [True, False])
def test_scan(queue, upload, cols, inclusive):
    data = np.random.default_rng(cols).integers(0, 10, size=(2, cols)).astype(np.int32)
    scan = Scan(queue, upload(data), cols, 2, inclusive=inclusive)
    scan.run()
    expected = np.cumsum(data, axis=1)
    if not inclusive:
        expected = expected - data
    np.testing.assert_array_equal(scan.read(), expected)


def test_scan_configuration_errors(queue, upload):
    with pytest.raises(ConfigurationError, match='multiple of 4'):
        Scan(queue, upload(np.ones(10, dtype=np.int32)), 10)
