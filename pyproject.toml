[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "faultinject"
version = "0.1.0"
description = "Library-level fault injection: plan-driven interception stubs, call-site return-check analysis and return-value profiling"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "fault injection",
    "testing",
    "robustness",
    "LD_PRELOAD",
    "control flow graph",
    "disassembly",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
    "Topic :: Software Development :: Quality Assurance",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
faultinject = "faultinject.runner:main"
faultinject-callsites = "faultinject.callcheck:main"
faultinject-profile = "faultinject.profiler:main"

[tool.hatch.build.targets.wheel]
packages = ["faultinject"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
