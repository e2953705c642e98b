import numpy as np
import pytest

from ssem.errors import NumericalError
from ssem.linalg import checked_inv, is_psd, logdet, safe_inv, symmetrize, unvec, vec


def test_safe_inv_falls_back_to_pinv():
    singular = np.array([[1.0, 1.0], [1.0, 1.0]])
    assert np.allclose(safe_inv(singular), np.linalg.pinv(singular))
    A = np.array([[2.0, 0.5], [0.5, 1.0]])
    assert np.allclose(safe_inv(A) @ A, np.eye(2))


def test_checked_inv_raises_with_payload():
    with pytest.raises(NumericalError) as excinfo:
        checked_inv(np.zeros((2, 2)), where="S_t", t=4)
    err = excinfo.value
    assert err.where == "S_t"
    assert err.t == 4
    assert "t=4" in str(err)


def test_checked_inv_rejects_ill_conditioned():
    A = np.diag([1.0, 1e-14])
    with pytest.raises(NumericalError) as excinfo:
        checked_inv(A, tol=1e12)
    assert excinfo.value.condition > 1e12
    assert np.allclose(checked_inv(A, tol=1e15) @ A, np.eye(2))


def test_checked_inv_rejects_nan():
    with pytest.raises(NumericalError):
        checked_inv(np.array([[np.nan]]))


def test_vec_is_column_major():
    M = np.array([[1.0, 2.0], [3.0, 4.0]])
    assert vec(M).tolist() == [1.0, 3.0, 2.0, 4.0]
    assert np.array_equal(unvec(vec(M), (2, 2)), M)


def test_kron_identity_for_vec():
    rng = np.random.default_rng(0)
    A, X, B = rng.normal(size=(2, 3)), rng.normal(size=(3, 4)), rng.normal(size=(4, 2))
    assert np.allclose(vec(A @ X @ B), np.kron(B.T, A) @ vec(X))


def test_logdet_and_psd():
    A = np.array([[2.0, 0.3], [0.3, 1.0]])
    assert np.isclose(logdet(A), np.log(np.linalg.det(A)))
    assert is_psd(A)
    assert not is_psd(np.array([[1.0, 0.0], [0.0, -1.0]]))
    with pytest.raises(NumericalError):
        logdet(np.array([[1.0, 0.0], [0.0, -1.0]]))


def test_symmetrize():
    A = np.array([[1.0, 2.0], [0.0, 1.0]])
    assert np.array_equal(symmetrize(A), np.array([[1.0, 1.0], [1.0, 1.0]]))
