"""
Edge and Corner Primitives

Functions over pixel buffers used by calibration and quality checks:
- Luma grayscale conversion
- Sobel gradient magnitude
- Laplacian response
- Otsu adaptive threshold
- Harris corner response with non-maximum suppression

Every function takes a read-only array and returns a freshly allocated one.
Fields are (height, width) float64 arrays; borders that a 3x3 kernel cannot
cover are left at zero.
"""

from typing import List

import cv2
import numpy as np

from wound_types import Point, RasterImage

# (height, width) float64 array
GrayscaleField = np.ndarray

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])
HARRIS_K = 0.04
HARRIS_PERCENTILE = 99


def to_grayscale(image: RasterImage) -> GrayscaleField:
    """
    Per-pixel luma (0.299R + 0.587G + 0.114B).

    Args:
        image: RGBA frame

    Returns:
        (height, width) float field
    """
    rgb = image.pixels[:, :, :3].astype(np.float64)
    return rgb @ LUMA_WEIGHTS


def _zero_border(field: GrayscaleField) -> GrayscaleField:
    field[0, :] = 0.0
    field[-1, :] = 0.0
    field[:, 0] = 0.0
    field[:, -1] = 0.0
    return field


def sobel_magnitude(field: GrayscaleField) -> GrayscaleField:
    """
    Gradient magnitude sqrt(gx² + gy²) from the 3x3 Sobel kernels.

    The 1-pixel border is left at zero.
    """
    f = np.array(field, dtype=np.float64)
    if f.shape[0] < 3 or f.shape[1] < 3:
        return np.zeros_like(f)

    sobel_x = cv2.Sobel(f, cv2.CV_64F, 1, 0, ksize=3)
    sobel_y = cv2.Sobel(f, cv2.CV_64F, 0, 1, ksize=3)
    return _zero_border(np.sqrt(sobel_x ** 2 + sobel_y ** 2))


def laplacian(field: GrayscaleField) -> GrayscaleField:
    """4-neighbour Laplacian [[0,1,0],[1,-4,1],[0,1,0]]; border left at zero."""
    f = np.array(field, dtype=np.float64)
    if f.shape[0] < 3 or f.shape[1] < 3:
        return np.zeros_like(f)
    # ksize=1 is the 4-neighbour aperture
    return _zero_border(cv2.Laplacian(f, cv2.CV_64F, ksize=1))


def intensity_histogram(field: GrayscaleField) -> np.ndarray:
    """256-bin histogram of floor-clamped intensities."""
    bins = np.clip(np.floor(np.asarray(field, dtype=np.float64)), 0, 255).astype(np.int64)
    return np.bincount(bins.ravel(), minlength=256)


def otsu_threshold(field: GrayscaleField) -> int:
    """
    Otsu's threshold over a 256-bin histogram.

    Maximizes the between-class variance wB·wF·(mB − mF)² over all candidate
    splits; the first maximal bin wins. Returns 0 for a constant field.

    Args:
        field: intensity field, values clamped to [0, 255] for binning

    Returns:
        Threshold bin in [0, 255]
    """
    histogram = intensity_histogram(field).astype(np.float64)
    total = histogram.sum()
    if total == 0:
        return 0

    levels = np.arange(256, dtype=np.float64)
    weight_b = np.cumsum(histogram)
    weight_f = total - weight_b
    sum_b = np.cumsum(levels * histogram)
    sum_all = sum_b[-1]

    valid = (weight_b > 0) & (weight_f > 0)
    between = np.zeros(256)
    wb = weight_b[valid]
    wf = weight_f[valid]
    mean_b = sum_b[valid] / wb
    mean_f = (sum_all - sum_b[valid]) / wf
    between[valid] = wb * wf * (mean_b - mean_f) ** 2

    if between.max() <= 0:
        return 0
    return int(np.argmax(between))


def _box_sum3(values: np.ndarray) -> np.ndarray:
    """3x3 window sum at every interior pixel; border left at zero."""
    out = np.zeros_like(values)
    h, w = values.shape
    if h < 3 or w < 3:
        return out
    acc = np.zeros((h - 2, w - 2))
    for dy in range(3):
        for dx in range(3):
            acc += values[dy:dy + h - 2, dx:dx + w - 2]
    out[1:-1, 1:-1] = acc
    return out


def corner_strength(field: GrayscaleField, k: float = HARRIS_K) -> GrayscaleField:
    """
    Raw Harris response det(M) − k·trace(M)² with a 3x3 structure-tensor window.

    First differences are central (I[x+1] − I[x−1]).
    """
    f = np.asarray(field, dtype=np.float64)
    ix = np.zeros_like(f)
    iy = np.zeros_like(f)
    if f.shape[0] >= 3 and f.shape[1] >= 3:
        ix[1:-1, 1:-1] = f[1:-1, 2:] - f[1:-1, :-2]
        iy[1:-1, 1:-1] = f[2:, 1:-1] - f[:-2, 1:-1]

    sxx = _box_sum3(ix * ix)
    syy = _box_sum3(iy * iy)
    sxy = _box_sum3(ix * iy)

    det = sxx * syy - sxy * sxy
    trace = sxx + syy
    return det - k * trace * trace


def harris_response(
    field: GrayscaleField,
    k: float = HARRIS_K,
    percentile: float = HARRIS_PERCENTILE,
) -> GrayscaleField:
    """
    Harris corner response after 3x3 non-maximum suppression.

    Only pixels above the given percentile of all response values that have no
    strictly larger 8-neighbour keep their response; everything else is zero.
    Pixels within 2 of the border are never kept.

    Args:
        field: grayscale field
        k: Harris sensitivity
        percentile: response percentile used as the keep threshold

    Returns:
        Suppressed response field
    """
    response = corner_strength(field, k)
    out = np.zeros_like(response)
    h, w = response.shape
    if h < 5 or w < 5:
        return out

    ordered = np.sort(response, axis=None)
    threshold = ordered[min(int(np.floor(percentile / 100 * ordered.size)), ordered.size - 1)]

    center = response[2:h - 2, 2:w - 2]
    keep = center > threshold
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dy == 0 and dx == 0:
                continue
            neighbour = response[2 + dy:h - 2 + dy, 2 + dx:w - 2 + dx]
            keep &= ~(neighbour > center)

    out[2:h - 2, 2:w - 2] = np.where(keep, center, 0.0)
    return out


def corner_points(suppressed: GrayscaleField) -> List[Point]:
    """Nonzero pixels of a suppressed Harris field, sorted by x then y."""
    ys, xs = np.nonzero(suppressed)
    order = np.lexsort((ys, xs))
    return [Point(float(xs[i]), float(ys[i])) for i in order]
