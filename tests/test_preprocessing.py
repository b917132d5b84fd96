"""Tests for image preprocessing."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from fakes import image_bytes
from instrumentscan.ml.errors import ImageDecodeError
from instrumentscan.ml.preprocessing import NORMALIZATIONS, decode_image, image_to_tensor, preprocess


class TestPreprocess:
    def test_shape_and_dtype(self) -> None:
        tensor = preprocess(image_bytes(size=(512, 384)))

        assert tensor.shape == (1, 224, 224, 3)
        assert tensor.dtype == np.float32

    @pytest.mark.parametrize("size", [(64, 64), (100, 200), (1024, 768), (224, 224)])
    def test_any_size_is_resized(self, size: tuple[int, int]) -> None:
        assert preprocess(image_bytes(size=size)).shape == (1, 224, 224, 3)

    def test_values_scaled_to_unit_range(self) -> None:
        tensor = preprocess(image_bytes(color=(255, 0, 51)))

        np.testing.assert_allclose(tensor[0, 112, 112], [1.0, 0.0, 0.2], atol=1e-6)
        assert tensor.min() >= 0.0
        assert tensor.max() <= 1.0

    def test_channel_order_is_rgb_and_layout_nhwc(self) -> None:
        image = Image.new("RGB", (448, 224), color=(255, 0, 0))
        image.paste((0, 0, 255), (224, 0, 448, 224))

        tensor = image_to_tensor(image)

        np.testing.assert_allclose(tensor[0, 10, 0], [1.0, 0.0, 0.0], atol=1e-6)
        np.testing.assert_allclose(tensor[0, 10, 223], [0.0, 0.0, 1.0], atol=1e-6)

    def test_rows_come_first(self) -> None:
        image = Image.new("RGB", (224, 448), color=(0, 255, 0))
        image.paste((0, 0, 0), (0, 224, 224, 448))

        tensor = image_to_tensor(image)

        np.testing.assert_allclose(tensor[0, 0, 100], [0.0, 1.0, 0.0], atol=1e-6)
        np.testing.assert_allclose(tensor[0, 223, 100], [0.0, 0.0, 0.0], atol=1e-6)

    def test_alpha_channel_is_dropped(self) -> None:
        tensor = preprocess(image_bytes(mode="RGBA", color=(255, 102, 0, 0)))

        assert tensor.shape == (1, 224, 224, 3)
        np.testing.assert_allclose(tensor[0, 0, 0], [1.0, 0.4, 0.0], atol=1e-6)

    def test_grayscale_is_expanded(self) -> None:
        tensor = preprocess(image_bytes(mode="L", color=51))

        np.testing.assert_allclose(tensor[0, 50, 50], [0.2, 0.2, 0.2], atol=1e-6)

    def test_jpeg_input(self) -> None:
        assert preprocess(image_bytes(fmt="JPEG")).shape == (1, 224, 224, 3)

    def test_deterministic(self) -> None:
        rng = np.random.default_rng(7)
        pixels = rng.integers(0, 256, size=(384, 512, 3), dtype=np.uint8)
        source = Image.fromarray(pixels)

        encoded = []
        for _ in range(2):
            buffer = io.BytesIO()
            source.save(buffer, format="PNG")
            encoded.append(buffer.getvalue())

        np.testing.assert_allclose(preprocess(encoded[0]), preprocess(encoded[1]), atol=1e-6)

    def test_custom_size(self) -> None:
        assert preprocess(image_bytes(), size=160).shape == (1, 160, 160, 3)


class TestNormalization:
    def test_symmetric_range(self) -> None:
        white = preprocess(image_bytes(color=(255, 255, 255)), normalization=NORMALIZATIONS["symmetric"])
        black = preprocess(image_bytes(color=(0, 0, 0)), normalization=NORMALIZATIONS["symmetric"])

        np.testing.assert_allclose(white, 1.0, atol=1e-6)
        np.testing.assert_allclose(black, -1.0, atol=1e-6)

    def test_imagenet_mean_std(self) -> None:
        tensor = preprocess(image_bytes(color=(0, 0, 0)), normalization=NORMALIZATIONS["imagenet"])

        expected = [-0.485 / 0.229, -0.456 / 0.224, -0.406 / 0.225]
        np.testing.assert_allclose(tensor[0, 0, 0], expected, atol=1e-5)


class TestDecodeErrors:
    def test_garbage_bytes(self) -> None:
        with pytest.raises(ImageDecodeError, match="Failed to decode"):
            preprocess(b"This is not an image")

    def test_empty_bytes(self) -> None:
        with pytest.raises(ImageDecodeError, match="Empty"):
            preprocess(b"")

    def test_truncated_image(self) -> None:
        pixels = np.random.default_rng(3).integers(0, 256, size=(256, 256, 3), dtype=np.uint8)
        buffer = io.BytesIO()
        Image.fromarray(pixels).save(buffer, format="JPEG")
        data = buffer.getvalue()

        with pytest.raises(ImageDecodeError):
            preprocess(data[: len(data) // 2])

    def test_pixel_limit(self) -> None:
        with pytest.raises(ImageDecodeError, match="pixel limit"):
            decode_image(image_bytes(size=(200, 100)), max_pixels=10_000)

    def test_within_pixel_limit(self) -> None:
        assert decode_image(image_bytes(size=(100, 100)), max_pixels=10_000).size == (100, 100)
