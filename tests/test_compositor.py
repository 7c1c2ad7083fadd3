from __future__ import annotations

from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from depthcut.borders import ExtendBorder, OutlineBorder, disc_structure, grow_mask, make_border
from depthcut.compositor import composite, cut_mask
from depthcut.depth import extract_depth_field
from depthcut.errors import ConfigError, InputError
from depthcut.ranges import partition

from conftest import gradient


def _alpha(layer) -> np.ndarray:
    return np.asarray(layer.image)[:, :, 3]


def _opaque_columns(layer) -> list:
    alpha = _alpha(layer)
    return [x for x in range(alpha.shape[1]) if alpha[:, x].all()]


def test_four_layer_gradient(red_image, gradient_depth):
    field = extract_depth_field(red_image, gradient_depth)
    ranges = partition(4, 0)
    layers = [composite(red_image, field, r) for r in ranges]

    assert [l.ordinal for l in layers] == [1, 2, 3, 4]
    assert [l.filename for l in layers] == ["0000.png", "0001.png", "0002.png", "0003.png"]
    for i, layer in enumerate(layers):
        assert _opaque_columns(layer) == list(range(i * 25, (i + 1) * 25))
        alpha = _alpha(layer)
        assert set(np.unique(alpha)) <= {0, 255}
        assert alpha.sum() == 25 * 100 * 255
        rgb = np.asarray(layer.image)[:, :, :3][alpha == 255]
        assert (rgb == [255, 0, 0]).all()


def test_overlap_extends_near_layers(red_image, gradient_depth):
    field = extract_depth_field(red_image, gradient_depth)
    layers = [composite(red_image, field, r) for r in partition(4, 10)]

    assert _opaque_columns(layers[0]) == list(range(0, 35))
    assert _opaque_columns(layers[1]) == list(range(25, 60))
    assert _opaque_columns(layers[2]) == list(range(50, 85))
    assert _opaque_columns(layers[3]) == list(range(75, 100))


def test_resampled_depth_produces_full_size_layers(red_image):
    field = extract_depth_field(red_image, gradient(50, 50))
    for r in partition(4, 0):
        assert composite(red_image, field, r).dimensions == (100, 100)


def test_composite_is_idempotent(red_image, gradient_depth):
    field = extract_depth_field(red_image, gradient_depth)
    r = partition(3, 5)[1]
    a = composite(red_image, field, r, 2)
    b = composite(red_image, field, r, 2)
    assert a.png == b.png
    assert np.array_equal(_alpha(a), _alpha(b))


def test_png_round_trip_matches_mask(red_image, gradient_depth):
    field = extract_depth_field(red_image, gradient_depth)
    r = partition(4, 0)[2]
    layer = composite(red_image, field, r)
    decoded = Image.open(BytesIO(layer.png))
    decoded.load()
    assert decoded.size == red_image.size
    alpha = np.asarray(decoded.convert("RGBA"))[:, :, 3]
    expected = np.where(cut_mask(field, r), 255, 0)
    assert np.array_equal(alpha, expected)


def test_inputs_are_not_modified(red_image, gradient_depth):
    field = extract_depth_field(red_image, gradient_depth)
    before = np.asarray(red_image).copy()
    composite(red_image, field, partition(2, 0)[0], 3)
    assert np.array_equal(np.asarray(red_image), before)


def test_preview_is_bounded():
    color = Image.new("RGB", (400, 200), (10, 20, 30))
    field = extract_depth_field(color, Image.new("L", (400, 200), 0))
    layer = composite(color, field, partition(1, 0)[0])
    preview = Image.open(BytesIO(layer.preview_png))
    assert preview.size == (150, 75)


def test_size_mismatch(red_image):
    field = extract_depth_field(Image.new("RGB", (10, 10)), Image.new("L", (10, 10)))
    with pytest.raises(InputError):
        composite(red_image, field, partition(1, 0)[0])


def test_negative_border(red_image, gradient_depth):
    field = extract_depth_field(red_image, gradient_depth)
    with pytest.raises(ConfigError):
        composite(red_image, field, partition(1, 0)[0], -1)


def test_outline_border_grows_and_recolors(red_image, gradient_depth):
    field = extract_depth_field(red_image, gradient_depth)
    r = partition(4, 0)[1]
    plain = composite(red_image, field, r)
    bordered = composite(red_image, field, r, 3, border=OutlineBorder(color=(0, 255, 0, 255)))

    assert _opaque_columns(bordered) == list(range(22, 53))
    arr = np.asarray(bordered.image)
    assert (arr[:, 23, :3] == [0, 255, 0]).all()
    assert (arr[:, 30, :3] == [255, 0, 0]).all()
    assert bordered.opaque_pixels > plain.opaque_pixels


def test_extend_border_copies_nearest_color():
    color = np.zeros((20, 20, 3), dtype=np.uint8)
    color[:, :10] = (200, 0, 0)
    color[:, 10:] = (0, 0, 200)
    depth = np.zeros((20, 20), dtype=np.uint8)
    depth[:, 10:] = 255
    color_im = Image.fromarray(color)
    field = extract_depth_field(color_im, Image.fromarray(depth))

    layer = composite(color_im, field, partition(2, 0)[0], 2, border=ExtendBorder())
    arr = np.asarray(layer.image)
    assert (arr[:, 10:12, 3] == 255).all()
    assert (arr[:, 10:12, :3] == [200, 0, 0]).all()
    assert (arr[:, 12:, 3] == 0).all()


def test_border_on_empty_layer_stays_empty(red_image):
    field = extract_depth_field(red_image, Image.new("L", (100, 100), 0))
    layer = composite(red_image, field, partition(2, 0)[1], 4)
    assert layer.opaque_pixels == 0


def test_disc_structure_is_isotropic():
    disc = disc_structure(2)
    assert disc.shape == (5, 5)
    assert np.array_equal(disc, disc.T)
    assert disc[2, 0] and disc[0, 2]
    assert not disc[0, 0]


def test_grow_mask_is_deterministic():
    mask = np.zeros((9, 9), dtype=bool)
    mask[4, 4] = True
    grown = grow_mask(mask, 2)
    assert grown.sum() == disc_structure(2).sum()
    assert np.array_equal(grown, grow_mask(mask, 2))
    assert np.array_equal(grow_mask(mask, 0), mask)


def test_make_border():
    assert isinstance(make_border("outline"), OutlineBorder)
    assert isinstance(make_border("extend"), ExtendBorder)
    with pytest.raises(ConfigError):
        make_border("blur")
