import os
import sys

# Add the examples folder to the path
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "examples"))

"""
examples/ex_landmarks_se3.py
examples/ex_monte_carlo_se3.py
"""


def test_ex_landmarks_se3():
    from ex_landmarks_se3 import main

    results = main(t_max=1.0)
    assert set(results.keys()) == {"EKF", "SEKF", "IEKF", "UKFM"}


def test_ex_monte_carlo_se3():
    from ex_monte_carlo_se3 import main

    results = main(num_trials=2, t_max=1.0, num_jobs=1)
    assert results.num_trials == 2


if __name__ == "__main__":
    test_ex_landmarks_se3()
    test_ex_monte_carlo_se3()
