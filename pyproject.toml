[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "eventsource"
version = "0.1.0"
description = "Event sourcing primitives: events, aggregates, serializers, stores and a command-driven repository"
requires-python = ">=3.10"
dependencies = []
keywords = ["event-sourcing", "cqrs", "ddd", "aggregate", "event-store", "dynamodb", "mysql", "postgresql"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Software Development :: Libraries",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["eventsource"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
