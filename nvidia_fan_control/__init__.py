"""Temperature-banded fan control daemon for NVIDIA GPUs."""
