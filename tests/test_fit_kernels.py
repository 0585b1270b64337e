import numpy as np
import pytest

from mwdc_reco.fit_kernels import fit_lines, line_errsq


def test_fit_lines_recovers_line_and_covariance():
    z = np.array([[0.0, 1.0, 2.0, 3.0]])
    x = 0.5 - 0.1 * z
    w = np.full_like(z, 4.0)
    pos, slope, chi2, cov, ok = fit_lines(x, z, w)
    assert ok[0]
    assert pos[0] == pytest.approx(0.5)
    assert slope[0] == pytest.approx(-0.1)
    assert chi2[0] == pytest.approx(0.0, abs=1e-20)

    # V = (A^T W A)^-1 for A = [1, z]
    a = np.stack([np.ones(4), z[0]], axis=1)
    v = np.linalg.inv(a.T @ np.diag(w[0]) @ a)
    assert cov[0] == pytest.approx([v[0, 0], v[0, 1], v[1, 1]])
    assert line_errsq(cov[0], 2.0) == pytest.approx(v[0, 0] + 4.0 * v[0, 1] + 4.0 * v[1, 1])


def test_fit_lines_batch_rows_are_independent():
    z = np.tile([0.0, 1.0, 2.0], (3, 1))
    x = np.array([
        [0.0, 1.0, 2.0],
        [1.0, 1.0, 1.0],
        [0.0, 1.0, 0.0],
    ])
    w = np.ones_like(x)
    pos, slope, chi2, _, ok = fit_lines(x, z, w)
    assert ok.all()
    assert slope == pytest.approx([1.0, 0.0, 0.0])
    assert pos == pytest.approx([0.0, 1.0, 1.0 / 3.0])
    # residuals -1/3, 2/3, -1/3
    assert chi2 == pytest.approx([0.0, 0.0, 2.0 / 3.0])


def test_two_points_have_zero_chi2():
    pos, slope, chi2, _, ok = fit_lines([[0.1, 0.3]], [[0.0, 1.0]], [[1e6, 1e6]])
    assert ok[0]
    assert chi2[0] == 0.0
    assert slope[0] == pytest.approx(0.2)
    assert pos[0] == pytest.approx(0.1)


def test_degenerate_z_is_rejected():
    _, _, _, _, ok = fit_lines([[0.1, 0.2, 0.3]], [[1.0, 1.0, 1.0]], [[1.0, 1.0, 1.0]])
    assert not ok[0]


def test_empty_batch():
    pos, slope, chi2, cov, ok = fit_lines(np.zeros((0, 3)), np.zeros((0, 3)), np.zeros((0, 3)))
    assert pos.shape == (0,)
    assert cov.shape == (0, 3)
    assert ok.shape == (0,)


def test_shape_errors():
    with pytest.raises(ValueError):
        fit_lines(np.zeros((2, 3)), np.zeros((2, 4)), np.zeros((2, 3)))
    with pytest.raises(ValueError):
        fit_lines(np.zeros((2, 1)), np.zeros((2, 1)), np.ones((2, 1)))
