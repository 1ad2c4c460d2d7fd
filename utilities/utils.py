import numpy as np
import scipy.linalg
import yaml


def get_skew_matrix(v: np.ndarray) -> np.ndarray:
    """Get the cross product matrix [v×] for a 3D vector v."""
    v = np.asarray(v, float).reshape(3)
    return np.array([[0, -v[2], v[1]],
                     [v[2], 0, -v[0]],
                     [-v[1], v[0], 0]])


def load_yaml(path: str) -> dict:
    """Load a YAML file and return its contents as a dictionary"""
    with open(path, 'r') as file:
        data = yaml.safe_load(file)
    return data if data is not None else {}


def is_invertible_covariance(cov: np.ndarray) -> bool:
    """
    True when cov is finite and has a finite inverse.

    This is the check applied before a covariance is turned into a
    noise model (NaN entries or a singular matrix both fail it).
    """
    cov = np.asarray(cov, float)
    try:
        cov_inv = scipy.linalg.inv(cov, check_finite=True)
    except (ValueError, np.linalg.LinAlgError):
        return False
    return bool(np.all(np.isfinite(cov_inv)))
