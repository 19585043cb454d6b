[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hami"
version = "0.0.1"
description = "Node-side vGPU monitor: reads per-container shared-region caches, exports Prometheus metrics and drives priority feedback."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "gpu",
    "vgpu",
    "kubernetes",
    "monitoring",
    "prometheus",
    "metrics",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
hami-vgpu-monitor = "hami.cli:main"
hami-testcollector = "hami.testcollector:main"

[tool.hatch.build.targets.wheel]
packages = ["hami"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
