# distributions.py
import numpy as np


class ExponentialDistr:
    def __init__(self, mean, seed=None):
        """
        :param mean: Mean of the distribution (1 / rate)
        :param seed: Seed for a reproducible stream
        """
        if mean <= 0:
            raise ValueError(f"Mean must be positive, got {mean}")
        self.mean = mean
        self.rng = np.random.default_rng(seed)

    def sample(self, n=None):
        if n is None:
            return float(self.rng.exponential(self.mean))
        return self.rng.exponential(self.mean, n)


class UniformDistr:
    def __init__(self, low, high, seed=None):
        if not 0 <= low < high:
            raise ValueError(f"Need 0 <= low < high, got [{low}, {high})")
        self.low = low
        self.high = high
        self.rng = np.random.default_rng(seed)

    def sample(self, n=None):
        if n is None:
            return float(self.rng.uniform(self.low, self.high))
        return self.rng.uniform(self.low, self.high, n)
