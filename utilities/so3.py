from __future__ import annotations

import numpy as np
import gtsam
from gtsam import Rot3

from utilities.utils import get_skew_matrix


def right_jacobian_SO3(omega: np.ndarray) -> np.ndarray:
    """
    Right Jacobian of SO(3) for exponential map.
    Jr(ω) such that: Exp(ω + δω) ≈ Exp(ω) * Exp(Jr(ω) * δω)

    Args:
        omega: Rotation vector (3,)

    Returns:
        Jr: 3×3 right Jacobian matrix
    """
    omega = np.asarray(omega, dtype=float).reshape(3)
    theta = np.linalg.norm(omega)
    omega_skew = get_skew_matrix(omega)

    if theta < 1e-6:
        # Small angle approximation: Jr ≈ I - 0.5*[ω]×
        return np.eye(3) - 0.5 * omega_skew

    s = np.sin(theta)
    c = np.cos(theta)

    # Jr(ω) = I - (1-cos(θ))/θ² [ω]× + (θ-sin(θ))/θ³ [ω]×²
    return (np.eye(3)
            - ((1 - c) / theta**2) * omega_skew
            + ((theta - s) / theta**3) * omega_skew @ omega_skew)


def right_jacobian_inv_SO3(omega: np.ndarray) -> np.ndarray:
    """
    Inverse of right Jacobian of SO(3).

    Args:
        omega: Rotation vector (3,)

    Returns:
        Jr_inv: 3×3 inverse right Jacobian matrix
    """
    omega = np.asarray(omega, dtype=float).reshape(3)
    theta = np.linalg.norm(omega)
    omega_skew = get_skew_matrix(omega)

    if theta < 1e-6:
        # Small angle: Jr^{-1} ≈ I + 0.5*[ω]×
        return np.eye(3) + 0.5 * omega_skew

    cot_half = 1.0 / np.tan(0.5 * theta)

    # Jr^{-1}(ω) = I + 0.5*[ω]× + (1/θ² - cot(θ/2)/(2θ)) [ω]×²
    return (np.eye(3)
            + 0.5 * omega_skew
            + (1.0 / theta**2 - cot_half / (2.0 * theta)) * omega_skew @ omega_skew)


def exp_so3(omega: np.ndarray) -> np.ndarray:
    """Rotation matrix Exp(ω)."""
    return Rot3.Expmap(np.asarray(omega, float).reshape(3)).matrix()


def log_so3(R: np.ndarray) -> np.ndarray:
    """Rotation vector Log(R) of a 3×3 rotation matrix."""
    return np.asarray(Rot3.Logmap(Rot3(np.asarray(R, float))), float).reshape(3)


def rot3_from_quat_array(q: np.ndarray) -> Rot3:
    """Scalar-first [w, x, y, z] array -> gtsam.Rot3."""
    q = np.asarray(q, float).reshape(4)
    q = q / np.linalg.norm(q)
    return Rot3.Quaternion(q[0], q[1], q[2], q[3])


def quat_array_from_rot3(R: Rot3) -> np.ndarray:
    """gtsam.Rot3 -> scalar-first [w, x, y, z] array with w >= 0."""
    q = R.toQuaternion()
    arr = np.array([q.w(), q.x(), q.y(), q.z()], float)
    if arr[0] < 0.0:
        arr = -arr
    return arr / np.linalg.norm(arr)


def rot3_from_matrix(R: np.ndarray) -> Rot3:
    """Build a gtsam.Rot3 from a (nearly) orthonormal 3×3 matrix."""
    R = np.asarray(R, float).reshape(3, 3)
    # Project onto SO(3) so slightly off config matrices are accepted
    U, _, Vt = np.linalg.svd(R)
    R_ortho = U @ Vt
    if np.linalg.det(R_ortho) < 0:
        U[:, -1] *= -1
        R_ortho = U @ Vt
    return gtsam.Rot3(R_ortho)
