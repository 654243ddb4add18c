# importing the scenario modules registers them
from dbisolation.anomaly.increment import run_increment
from dbisolation.anomaly.read_skew import run_read_skew
from dbisolation.anomaly.write_skew import run_write_skew

__all__ = ["run_increment", "run_read_skew", "run_write_skew"]
