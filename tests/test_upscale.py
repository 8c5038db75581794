import threading

import numpy as np
import pytest

from tiledsr.inference import FailurePolicy, InferenceAdapter, Upscaler
from tiledsr.inference.inference import tiled_upscale
from tiledsr.inference.tiling import DIRECT, TILED

from fakes import BadResultOnCall, CroppedOutput, FailOnCall, NearestUpsample, SolidColor


def _image(h, w, seed=0):
    rng = np.random.RandomState(seed)
    img = rng.randint(0, 256, size=(h, w, 4)).astype(np.uint8)
    img[..., 3] = 255
    return img


def _nearest(img, scale=2):
    return img.repeat(scale, axis=0).repeat(scale, axis=1)


def test_dynamic_model_uses_direct_mode():
    calls = []

    def model(x):
        calls.append(tuple(x.shape))
        return NearestUpsample(2)(x)

    upscaler = Upscaler(model, device='cpu')
    assert upscaler.mode == DIRECT
    img = _image(30, 50)
    out = upscaler.upscale(img, scale=2.)
    assert calls == [(1, 3, 30, 50)]
    np.testing.assert_array_equal(out, _nearest(img))


def test_concrete_scenario():
    model = SolidColor(scale=2)
    upscaler = Upscaler(model, input_shape=(512, 512), context_padding=12, device='cpu')
    assert upscaler.mode == TILED
    out = upscaler.upscale(_image(700, 1000), scale=2.)
    assert out.shape == (1400, 2000, 4)
    # Every output pixel has been painted
    assert np.all(out[..., 3] == 255)
    assert model.calls == 6
    # Each tile shows up as exactly one solid region
    assert set(np.unique(out[..., 0])) == {1, 2, 3, 4, 5, 6}
    assert np.all(out[:976, :976, 0] == 1)
    assert np.all(out[:976, 976:1952, 0] == 2)
    assert np.all(out[:976, 1952:, 0] == 3)
    assert np.all(out[976:, :976, 0] == 4)
    assert np.all(out[976:, 1952:, 0] == 6)


def test_tiled_matches_whole_image():
    img = _image(700, 1000)
    upscaler = Upscaler(NearestUpsample(2), input_shape=(512, 512), device='cpu')
    out = upscaler.upscale(img, scale=2.)
    # No seams, no shifted or duplicated regions
    np.testing.assert_array_equal(out, _nearest(img))


@pytest.mark.parametrize('src_shape', [(64, 64), (65, 200), (130, 31), (1, 1)])
@pytest.mark.parametrize('tile,padding', [(32, 4), (16, 7), (16, 12)])
def test_tiled_matches_whole_image_for_tile_grids(src_shape, tile, padding):
    img = _image(*src_shape, seed=1)
    upscaler = Upscaler(NearestUpsample(3), input_shape=(tile, tile), context_padding=padding, device='cpu')
    out = upscaler.upscale(img, scale=3.)
    np.testing.assert_array_equal(out, _nearest(img, 3))


def test_small_image_tiled_equals_direct():
    img = _image(100, 150)
    direct = Upscaler(NearestUpsample(2), device='cpu').upscale(img, scale=2.)
    tiled = Upscaler(NearestUpsample(2), input_shape=(512, 512), device='cpu').upscale(img, scale=2.)
    assert tiled.shape == direct.shape == (200, 300, 4)
    np.testing.assert_array_equal(tiled, direct)


def test_degenerate_input_shape_uses_fallback_tile_size():
    upscaler = Upscaler(NearestUpsample(2), input_shape=(0, -1), tile_size_fallback=64, device='cpu')
    assert upscaler.tile_shape == (64, 64)
    img = _image(100, 90)
    np.testing.assert_array_equal(upscaler.upscale(img, scale=2.), _nearest(img))


def test_padding_fallback_terminates():
    img = _image(40, 40)
    upscaler = Upscaler(NearestUpsample(2), input_shape=(16, 16), context_padding=8, device='cpu')
    np.testing.assert_array_equal(upscaler.upscale(img, scale=2.), _nearest(img))


def test_idempotent():
    img = _image(300, 200)
    upscaler = Upscaler(NearestUpsample(2), input_shape=(64, 64), device='cpu')
    first = upscaler.upscale(img, scale=2.)
    second = upscaler.upscale(img, scale=2.)
    assert first.tobytes() == second.tobytes()


def test_source_is_not_modified():
    img = _image(80, 80)
    before = img.copy()
    Upscaler(NearestUpsample(2), input_shape=(32, 32), device='cpu').upscale(img, scale=2.)
    np.testing.assert_array_equal(img, before)


def test_abort_on_tile_failure():
    model = FailOnCall(NearestUpsample(2), fail_on=(3,))
    upscaler = Upscaler(model, input_shape=(512, 512), device='cpu')
    assert upscaler.upscale(_image(700, 1000), scale=2.) is None
    # Nothing after the failing tile is processed
    assert model.calls == 3


def test_abort_on_first_tile_allocates_nothing(monkeypatch):
    from tiledsr.inference import compositing
    allocations = []
    original_allocate = compositing.OutputAssembler.allocate

    def allocate(self, *args, **kwargs):
        allocations.append(args)
        return original_allocate(self, *args, **kwargs)

    monkeypatch.setattr(compositing.OutputAssembler, 'allocate', allocate)
    model = FailOnCall(NearestUpsample(2), fail_on=(1,))
    upscaler = Upscaler(model, input_shape=(64, 64), device='cpu')
    assert upscaler.upscale(_image(100, 100), scale=2.) is None
    assert allocations == []


def test_skip_leaves_region_unpainted():
    img = _image(700, 1000)
    model = FailOnCall(NearestUpsample(2), fail_on=(2,))
    upscaler = Upscaler(model, input_shape=(512, 512), failure_policy='skip', device='cpu')
    out = upscaler.upscale(img, scale=2.)
    assert out.shape == (1400, 2000, 4)
    assert model.calls == 6
    # Region of the second tile in the first row stays transparent
    assert np.all(out[:976, 976:1952] == 0)
    expected = _nearest(img)
    np.testing.assert_array_equal(out[:976, :976], expected[:976, :976])
    np.testing.assert_array_equal(out[976:], expected[976:])


def test_skip_first_tile_still_allocates_later():
    img = _image(100, 100)
    model = FailOnCall(NearestUpsample(2), fail_on=(1,))
    upscaler = Upscaler(model, input_shape=(64, 64), failure_policy=FailurePolicy.SKIP, device='cpu')
    out = upscaler.upscale(img, scale=2.)
    assert out.shape == (200, 200, 4)
    assert np.any(out[..., 3] == 0)


def test_skip_every_tile_returns_none():
    model = FailOnCall(NearestUpsample(2), fail_on=range(1, 100))
    upscaler = Upscaler(model, input_shape=(64, 64), failure_policy='skip', device='cpu')
    assert upscaler.upscale(_image(100, 100), scale=2.) is None


def test_direct_mode_failure_returns_none():
    model = FailOnCall(NearestUpsample(2), fail_on=(1,))
    assert Upscaler(model, device='cpu').upscale(_image(10, 10), scale=2.) is None


@pytest.mark.parametrize('policy,fail_on', [('abort', (2,)), ('skip', range(1, 100))])
@pytest.mark.parametrize('error', [TypeError, KeyError, AttributeError])
def test_backend_type_error_returns_none(policy, fail_on, error):
    model = FailOnCall(NearestUpsample(2), fail_on=fail_on, error=error)
    upscaler = Upscaler(model, input_shape=(64, 64), failure_policy=policy, device='cpu')
    assert upscaler.upscale(_image(100, 100), scale=2.) is None
    if policy == 'abort':
        assert model.calls == 2


@pytest.mark.parametrize('policy,fail_on', [('abort', (2,)), ('skip', range(1, 100))])
@pytest.mark.parametrize('result', [None, 'not an image', [[1, 2], [3]]])
def test_backend_non_tensor_result_returns_none(policy, fail_on, result):
    model = BadResultOnCall(NearestUpsample(2), fail_on=fail_on, result=result)
    upscaler = Upscaler(model, input_shape=(64, 64), failure_policy=policy, device='cpu')
    assert upscaler.upscale(_image(100, 100), scale=2.) is None
    if policy == 'abort':
        assert model.calls == 2


def test_skip_tiles_with_unusable_backend_results():
    img = _image(100, 100)
    model = BadResultOnCall(FailOnCall(NearestUpsample(2), fail_on=(5,), error=TypeError), fail_on=(2,))
    upscaler = Upscaler(model, input_shape=(64, 64), failure_policy='skip', device='cpu')
    out = upscaler.upscale(img, scale=2.)
    assert out.shape == (200, 200, 4)
    assert model.calls == 9
    # Two tiles are left transparent, the rest matches the whole-image result
    painted = out[..., 3] == 255
    assert 0 < painted.sum() < painted.size
    np.testing.assert_array_equal(out[painted], _nearest(img)[painted])


def test_direct_mode_unusable_result_returns_none():
    model = BadResultOnCall(NearestUpsample(2), fail_on=(1,))
    assert Upscaler(model, device='cpu').upscale(_image(10, 10), scale=2.) is None


def test_cancel_before_first_tile():
    model = SolidColor()
    cancel = threading.Event()
    cancel.set()
    upscaler = Upscaler(model, input_shape=(64, 64), device='cpu')
    assert upscaler.upscale(_image(100, 100), scale=2., cancel=cancel) is None
    assert model.calls == 0


def test_cancel_between_tiles():
    cancel = threading.Event()

    class CancelAfterFirst(SolidColor):
        def __call__(self, x):
            cancel.set()
            return super().__call__(x)

    model = CancelAfterFirst()
    upscaler = Upscaler(model, input_shape=(64, 64), device='cpu')
    assert upscaler.upscale(_image(100, 100), scale=2., cancel=cancel) is None
    assert model.calls == 1


def test_output_resampled_to_requested_scale():
    # The model returns slightly less than 2x, the output still has the requested size
    upscaler = Upscaler(CroppedOutput(), input_shape=(32, 32), device='cpu')
    out = upscaler.upscale(_image(50, 70), scale=2.)
    assert out.shape == (100, 140, 4)
    assert np.all(out[..., 3] == 255)


def test_non_integer_scale():
    def model(x):
        import torch.nn.functional as F
        return F.interpolate(x, scale_factor=1.5, mode='nearest')

    upscaler = Upscaler(model, input_shape=(32, 32), context_padding=4, device='cpu')
    out = upscaler.upscale(_image(45, 61), scale=1.5)
    assert out.shape == (round(45 * 1.5), round(61 * 1.5), 4)
    assert np.all(out[..., 3] == 255)


def test_grayscale_and_rgb_inputs():
    upscaler = Upscaler(NearestUpsample(2), input_shape=(16, 16), device='cpu')
    gray = np.arange(20 * 30, dtype=np.uint8).reshape(20, 30)
    out = upscaler.upscale(gray, scale=2.)
    assert out.shape == (40, 60, 4)
    np.testing.assert_array_equal(out[..., 0], _nearest(gray))
    rgb = _image(20, 30)[..., :3]
    assert upscaler.upscale(rgb, scale=2.).shape == (40, 60, 4)


def test_shared_adapter():
    adapter = InferenceAdapter(NearestUpsample(2), input_shape=(32, 32), device='cpu')
    a = Upscaler(adapter, context_padding=4)
    b = Upscaler(adapter, context_padding=8)
    img = _image(50, 50)
    np.testing.assert_array_equal(a.upscale(img, 2.), b.upscale(img, 2.))


def test_tiled_upscale_function():
    adapter = InferenceAdapter(NearestUpsample(2), device='cpu')
    img = _image(40, 50)
    out = tiled_upscale(adapter, img, scale=2., tile_shape=(16, 24), padding=2)
    np.testing.assert_array_equal(out, _nearest(img))


def test_invalid_arguments():
    with pytest.raises(ValueError):
        Upscaler(NearestUpsample(2), context_padding=-1, device='cpu')
    with pytest.raises(ValueError):
        Upscaler(NearestUpsample(2), failure_policy='ignore', device='cpu')
    upscaler = Upscaler(NearestUpsample(2), device='cpu')
    with pytest.raises(ValueError):
        upscaler.upscale(_image(10, 10), scale=0.)
    with pytest.raises(ValueError):
        upscaler.upscale(np.zeros((0, 10, 4), dtype=np.uint8), scale=2.)


def test_options_are_validated_before_the_model_is_loaded():
    # A missing model file would raise its own ValueError
    with pytest.raises(ValueError, match='context_padding'):
        Upscaler('/nonexistent/model.pt', context_padding=-1, device='cpu')
    with pytest.raises(ValueError, match='tile_size_fallback'):
        Upscaler('/nonexistent/model.pt', tile_size_fallback=0, device='cpu')
    with pytest.raises(ValueError, match='ignore'):
        Upscaler('/nonexistent/model.pt', failure_policy='ignore', device='cpu')


@pytest.mark.parametrize('scale', [0., -2., float('nan')])
def test_tiled_upscale_rejects_non_positive_scale(scale):
    model = SolidColor()
    adapter = InferenceAdapter(model, device='cpu')
    with pytest.raises(ValueError):
        tiled_upscale(adapter, _image(40, 50), scale=scale, tile_shape=(16, 16), padding=2)
    assert model.calls == 0
