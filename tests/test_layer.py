# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2026 Quant Civil

"""End-to-end tests for densecrf/layer.py - the batch engine."""

import time

import numpy as np
import pytest

from densecrf import (
    BackwardNotSupported,
    DenseCRF,
    DenseCRFCapacityError,
    DenseCRFConfig,
    DenseCRFConfigError,
    refine,
)


def _two_by_two_scores():
    scores = np.zeros((1, 2, 2, 2), dtype=np.float32)
    scores[0, 0] = [[5.0, 5.0], [0.0, 0.0]]
    scores[0, 1] = [[0.0, 0.0], [5.0, 5.0]]
    return scores


def _numpy_config(**kwargs):
    kwargs.setdefault("filter_backend", "numpy")
    return DenseCRFConfig(**kwargs)


class TestEndToEnd:
    def test_two_by_two_without_pairwise(self):
        scores = _two_by_two_scores()
        dims = np.array([[2, 2]])
        marginals, labels = refine(scores, dims, config=_numpy_config(max_iter=5))
        assert marginals.shape == (1, 2, 2, 2)
        assert labels.shape == (1, 1, 2, 2)
        np.testing.assert_array_equal(labels[0, 0], [[0, 0], [1, 1]])
        expected = 1.0 / (1.0 + np.exp(-5.0))
        np.testing.assert_allclose(marginals[0, 0], [[expected, expected], [1 - expected, 1 - expected]], atol=1e-5)

    def test_iterations_do_not_change_result_without_kernels(self):
        scores = _two_by_two_scores()
        dims = np.array([[2, 2]])
        m0, _ = refine(scores, dims, config=_numpy_config(max_iter=0))
        m5, _ = refine(scores, dims, config=_numpy_config(max_iter=5))
        np.testing.assert_allclose(m0, m5, atol=1e-6)

    def test_tie_breaks_to_lowest_class(self):
        scores = np.zeros((1, 3, 1, 2), dtype=np.float32)
        scores[0, 2, 0, 1] = 1.0
        _, labels = refine(scores, np.array([[1, 2]]), config=_numpy_config(max_iter=2))
        assert labels[0, 0, 0, 0] == 0
        assert labels[0, 0, 0, 1] == 2

    def test_dominant_class_near_one_hot(self):
        scores = np.zeros((1, 3, 1, 1), dtype=np.float32)
        scores[0, 0] = 10.0
        marginals, _ = refine(scores, np.array([[1, 1]]), config=_numpy_config(max_iter=0))
        assert marginals[0, 0, 0, 0] > 0.999

    def test_padding_is_zero(self):
        rng = np.random.default_rng(5)
        scores = rng.normal(size=(2, 3, 5, 6)).astype(np.float32) + 2.0
        dims = np.array([[3, 4], [5, 2]])
        config = _numpy_config(max_iter=3, pos_w=[3.0], pos_xy_std=[1.0])
        marginals, labels = refine(scores, dims, config=config)
        for n, (h, w) in enumerate(dims):
            inside = marginals[n, :, :h, :w]
            np.testing.assert_allclose(inside.sum(axis=0), np.ones((h, w)), atol=1e-5)
            outside = np.ones((5, 6), dtype=bool)
            outside[:h, :w] = False
            assert np.all(marginals[n][:, outside] == 0)
            assert np.all(labels[n, 0][outside] == 0)

    def test_bilateral_respects_color_edges(self):
        # noisy scores over a two-color image; the bilateral kernel should follow the colors
        height, width = 4, 6
        image = np.zeros((1, 3, height, width), dtype=np.float32)
        image[0, :, :, 3:] = 100.0
        scores = np.zeros((1, 2, height, width), dtype=np.float32)
        scores[0, 0, :, :3] = 1.0
        scores[0, 1, :, 3:] = 1.0
        scores[0, 1, 1, 1] = 1.5  # outlier inside the left block
        config = _numpy_config(max_iter=5, bi_w=[10.0], bi_xy_std=[5.0], bi_rgb_std=[10.0])
        _, labels = refine(scores, np.array([[height, width]]), image=image, config=config)
        assert np.all(labels[0, 0, :, :3] == 0)
        assert np.all(labels[0, 0, :, 3:] == 1)

    def test_torch_backend_matches_numpy(self):
        pytest.importorskip("torch")
        rng = np.random.default_rng(9)
        scores = rng.normal(size=(1, 3, 4, 4)).astype(np.float32)
        image = rng.normal(scale=20.0, size=(1, 3, 4, 4)).astype(np.float32)
        dims = np.array([[4, 3]])
        common = dict(max_iter=4, pos_w=[3.0], pos_xy_std=[2.0], bi_w=[5.0], bi_xy_std=[4.0], bi_rgb_std=[13.0])
        ref, ref_labels = refine(scores, dims, image=image, config=DenseCRFConfig(filter_backend="numpy", **common))
        got, got_labels = refine(
            scores, dims, image=image, config=DenseCRFConfig(filter_backend="torch", device="cpu", **common)
        )
        np.testing.assert_allclose(got, ref, atol=1e-4)
        np.testing.assert_array_equal(got_labels, ref_labels)

    def test_lane_width_does_not_change_output(self):
        rng = np.random.default_rng(4)
        scores = rng.normal(size=(1, 3, 3, 3)).astype(np.float32)
        dims = np.array([[3, 2]])
        base = dict(max_iter=3, pos_w=[2.0], pos_xy_std=[1.0])
        scalar, _ = refine(scores, dims, config=_numpy_config(lane_width=1, **base))
        wide, _ = refine(scores, dims, config=_numpy_config(lane_width=4, **base))
        np.testing.assert_array_equal(scalar, wide)

    def test_empty_image_in_batch(self):
        scores = np.ones((2, 2, 3, 3), dtype=np.float32)
        dims = np.array([[0, 0], [3, 3]])
        marginals, labels = refine(scores, dims, config=_numpy_config(max_iter=1, pos_w=[1.0], pos_xy_std=[1.0]))
        assert np.all(marginals[0] == 0)
        np.testing.assert_allclose(marginals[1].sum(axis=0), np.ones((3, 3)), atol=1e-5)

    def test_oversized_dims_use_padded_extent(self):
        scores = np.zeros((1, 2, 2, 3), dtype=np.float32)
        scores[0, 1] = 4.0
        marginals, labels = refine(scores, np.array([[10, 10]]), config=_numpy_config(max_iter=1))
        assert np.all(labels == 1)
        assert np.all(marginals[0, 1] > 0.9)

    def test_batch_uses_each_images_own_colors(self):
        # same scores, different color layouts: labels must follow each image's own split
        size = 4
        scores = np.zeros((2, 2, size, size), dtype=np.float32)
        scores[:, 0, 0, 0] = 3.0
        scores[:, 1, size - 1, size - 1] = 3.0
        image = np.zeros((2, 3, size, size), dtype=np.float32)
        image[0, :, :, size // 2 :] = 100.0
        image[1, :, size // 2 :, :] = 100.0
        config = _numpy_config(max_iter=8, bi_w=[10.0], bi_xy_std=[50.0], bi_rgb_std=[10.0])
        _, labels = refine(scores, np.full((2, 2), size), image=image, config=config)
        left_right = np.zeros((size, size), dtype=np.int64)
        left_right[:, size // 2 :] = 1
        np.testing.assert_array_equal(labels[0, 0], left_right)
        np.testing.assert_array_equal(labels[1, 0], left_right.T)

    def test_lattice_backend_respects_color_edges(self):
        height, width = 4, 6
        image = np.zeros((1, 3, height, width), dtype=np.float32)
        image[0, :, :, 3:] = 100.0
        scores = np.zeros((1, 2, height, width), dtype=np.float32)
        scores[0, 0, :, :3] = 1.0
        scores[0, 1, :, 3:] = 1.0
        scores[0, 1, 1, 1] = 1.5
        config = DenseCRFConfig(
            max_iter=5, bi_w=[10.0], bi_xy_std=[5.0], bi_rgb_std=[10.0], filter_backend="lattice"
        )
        marginals, labels = refine(scores, np.array([[height, width]]), image=image, config=config)
        assert np.all(labels[0, 0, :, :3] == 0)
        assert np.all(labels[0, 0, :, 3:] == 1)
        np.testing.assert_allclose(marginals[0].sum(axis=0), np.ones((height, width)), atol=1e-5)

    def test_auto_backend_handles_large_image(self, throughput_recorder):
        rng = np.random.default_rng(3)
        size = 96
        scores = rng.normal(size=(1, 3, size, size)).astype(np.float32)
        image = rng.normal(scale=30.0, size=(1, 3, size, size)).astype(np.float32)
        config = DenseCRFConfig(
            max_iter=3, pos_w=[3.0], pos_xy_std=[3.0], bi_w=[5.0], bi_xy_std=[20.0], bi_rgb_std=[13.0], device="cpu"
        )
        start = time.perf_counter()
        marginals, labels = refine(scores, np.array([[size, size]]), image=image, config=config)
        elapsed = time.perf_counter() - start
        np.testing.assert_allclose(marginals[0].sum(axis=0), np.ones((size, size)), atol=1e-4)
        assert labels.max() <= 2
        throughput_recorder(
            {"label": "96x96x3", "backend": "auto", "elapsed": elapsed, "throughput": size * size / max(elapsed, 1e-9)}
        )

    def test_outputs_filled_in_place(self):
        scores = _two_by_two_scores()
        marginals = np.full((1, 2, 2, 2), 7.0, dtype=np.float32)
        labels = np.full((1, 1, 2, 2), 7.0, dtype=np.float32)
        engine = DenseCRF(_numpy_config(max_iter=1))
        engine.setup([scores.shape, (1, 2)])
        out_m, out_l = engine.forward([scores, np.array([[2, 1]])], outputs=(marginals, labels))
        assert out_m is marginals and out_l is labels
        np.testing.assert_array_equal(labels[0, 0], [[0, 0], [1, 0]])
        assert np.all(marginals[0, :, :, 1] == 0)

    def test_status_callback_reports_each_image(self):
        messages = []
        scores = np.zeros((3, 2, 2, 2), dtype=np.float32)
        refine(scores, np.full((3, 2), 2), config=_numpy_config(max_iter=0), status_callback=messages.append)
        assert len(messages) == 3
        assert messages[-1].startswith("Dense CRF image 3/3")

    def test_throughput_recorded(self, throughput_recorder):
        rng = np.random.default_rng(0)
        scores = rng.normal(size=(1, 4, 16, 16)).astype(np.float32)
        config = _numpy_config(max_iter=5, pos_w=[3.0], pos_xy_std=[3.0])
        start = time.perf_counter()
        refine(scores, np.array([[16, 16]]), config=config)
        elapsed = time.perf_counter() - start
        throughput_recorder(
            {"label": "16x16x4", "backend": "numpy", "elapsed": elapsed, "throughput": 256 / max(elapsed, 1e-9), "is_baseline": True}
        )


class TestBufferGrowth:
    def test_padded_footprint_drives_capacity(self):
        engine = DenseCRF(_numpy_config(max_iter=0))
        engine.setup([(1, 2, 4, 4), (1, 2)])
        engine.forward([np.zeros((1, 2, 4, 4), dtype=np.float32), np.array([[1, 1]])])
        assert engine.buffers.capacity == 4 * 4 * 2
        assert engine.map_capacity == 16

    def test_grow_only_across_batches(self):
        engine = DenseCRF(_numpy_config(max_iter=1))
        engine.setup([(1, 2, 4, 4), (1, 2)])
        for size in (4, 3, 6):
            engine.forward([np.zeros((1, 2, size, size), dtype=np.float32), np.array([[size, size]])])
        assert engine.buffers.allocations == 2
        assert engine.buffers.capacity == 6 * 6 * 2
        engine.forward([np.zeros((1, 2, 2, 2), dtype=np.float32), np.array([[2, 2]])])
        assert engine.buffers.capacity == 6 * 6 * 2

    def test_stale_state_does_not_leak_between_images(self):
        scores = np.zeros((2, 2, 3, 3), dtype=np.float32)
        scores[0, 0] = 6.0
        scores[1, 1, :2, :2] = 6.0
        dims = np.array([[3, 3], [2, 2]])
        config = _numpy_config(max_iter=2, pos_w=[1.0], pos_xy_std=[1.0])
        _, batch_labels = refine(scores, dims, config=config)
        _, single_labels = refine(scores[1:], dims[1:], config=config)
        np.testing.assert_array_equal(batch_labels[1], single_labels[0])

    def test_capacity_error_when_buffers_too_small(self):
        engine = DenseCRF(_numpy_config(max_iter=0))
        engine.setup([(1, 2, 3, 3), (1, 2)])
        engine.reshape([np.zeros((1, 2, 3, 3), dtype=np.float32), np.array([[3, 3]])])
        with pytest.raises(DenseCRFCapacityError, match="not enough"):
            engine.buffers.views(3 * 3 * 2 + 1)

    def test_close_is_idempotent(self):
        engine = DenseCRF(_numpy_config())
        engine.setup([(1, 2, 2, 2), (1, 2)])
        engine.forward([np.zeros((1, 2, 2, 2), dtype=np.float32), np.array([[2, 2]])])
        engine.close()
        engine.close()
        assert engine.buffers.capacity == 0


class TestConfigurationErrors:
    def test_mismatched_spatial_lists(self):
        with pytest.raises(DenseCRFConfigError, match="pos_w"):
            DenseCRF(DenseCRFConfig(pos_w=[1.0, 2.0], pos_xy_std=[1.0, 2.0, 3.0]))

    def test_mismatched_bilateral_lists(self):
        with pytest.raises(DenseCRFConfigError, match="bi_rgb_std"):
            DenseCRF(DenseCRFConfig(bi_w=[1.0], bi_xy_std=[1.0], bi_rgb_std=[]))

    def test_bilateral_requires_image(self):
        engine = DenseCRF(_numpy_config(bi_w=[1.0], bi_xy_std=[1.0], bi_rgb_std=[1.0]))
        with pytest.raises(DenseCRFConfigError, match="reference image"):
            engine.setup([(1, 2, 2, 2), (1, 2)])

    def test_image_must_have_three_channels(self):
        engine = DenseCRF(_numpy_config(bi_w=[1.0], bi_xy_std=[1.0], bi_rgb_std=[1.0]))
        with pytest.raises(DenseCRFConfigError, match="3 channels"):
            engine.setup([(1, 2, 2, 2), (1, 2), (1, 4, 2, 2)])

    def test_requires_two_inputs(self):
        with pytest.raises(DenseCRFConfigError, match="two inputs"):
            DenseCRF(_numpy_config()).setup([(1, 2, 2, 2)])

    def test_batch_count_mismatch(self):
        engine = DenseCRF(_numpy_config())
        engine.setup([(2, 2, 2, 2), (1, 2)])
        with pytest.raises(DenseCRFConfigError, match="same number"):
            engine.forward([np.zeros((2, 2, 2, 2), dtype=np.float32), np.array([[2, 2]])])

    def test_image_size_mismatch(self):
        engine = DenseCRF(_numpy_config(bi_w=[1.0], bi_xy_std=[1.0], bi_rgb_std=[1.0]))
        engine.setup([(1, 2, 2, 2), (1, 2), (1, 3, 3, 3)])
        with pytest.raises(DenseCRFConfigError, match="same height and width"):
            engine.forward([np.zeros((1, 2, 2, 2)), np.array([[2, 2]]), np.zeros((1, 3, 3, 3))])

    def test_negative_iterations_rejected(self):
        with pytest.raises(DenseCRFConfigError, match="max_iter"):
            DenseCRF(DenseCRFConfig(max_iter=-1))

    def test_record_larger_than_buffers_in_one_axis(self):
        with pytest.raises(DenseCRFCapacityError, match="not enough"):
            refine(np.zeros((1, 2, 4, 4), dtype=np.float32), np.array([[8, 3]]), config=_numpy_config(max_iter=0))

    def test_record_past_padding_within_capacity(self):
        with pytest.raises(DenseCRFConfigError, match="padded extent"):
            refine(np.zeros((1, 2, 4, 4), dtype=np.float32), np.array([[8, 1]]), config=_numpy_config(max_iter=0))

    def test_zero_classes_rejected(self):
        with pytest.raises(DenseCRFConfigError, match="at least one class"):
            refine(np.zeros((1, 0, 2, 2), dtype=np.float32), np.array([[2, 2]]), config=_numpy_config(max_iter=1))

    @pytest.mark.parametrize("dims", [np.array([2, 2]), np.array([[2]]), np.zeros((1, 2, 1))])
    def test_dims_must_be_height_width_records(self, dims):
        with pytest.raises(DenseCRFConfigError, match=r"\[N, 2\]"):
            refine(np.zeros((1, 2, 2, 2), dtype=np.float32), dims, config=_numpy_config(max_iter=1))

    def test_image_without_bilateral_is_ignored(self):
        scores = _two_by_two_scores()
        image = np.zeros((1, 3, 2, 2), dtype=np.float32)
        _, labels = refine(scores, np.array([[2, 2]]), image=image, config=_numpy_config(max_iter=1))
        np.testing.assert_array_equal(labels[0, 0], [[0, 0], [1, 1]])


def test_backward_always_fails():
    engine = DenseCRF(_numpy_config())
    with pytest.raises(BackwardNotSupported):
        engine.backward()
    with pytest.raises(NotImplementedError):
        engine.backward([], [True], [])
