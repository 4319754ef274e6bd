"""Caller-facing input errors.

These are raised before any store mutation and surface as 4xx responses.
They are never persisted on the run.
"""

from __future__ import annotations


class RelayInputError(Exception):
    status_code = 400


class InvalidStepError(RelayInputError):
    def __init__(self, raw_step: object, total_steps: int):
        super().__init__(f"Invalid step: {raw_step}. Must be 1-{total_steps}.")
        self.raw_step = raw_step


class ScenarioMismatchError(RelayInputError):
    def __init__(self, run_id: str):
        super().__init__(f"Run {run_id} belongs to a different scenario.")
        self.run_id = run_id


class StepNotFoundError(RelayInputError):
    def __init__(self, run_id: str, step: int):
        super().__init__(f"Run {run_id} does not contain step {step}.")
        self.run_id = run_id
        self.step = step


class MissingParameterError(RelayInputError):
    def __init__(self, name: str):
        super().__init__(f"Missing {name} query parameter")


class UnknownScenarioError(RelayInputError):
    def __init__(self, value: str, choices: list[str]):
        super().__init__(f"Invalid scenario. Use one of: {', '.join(choices)}.")
        self.value = value


class DuplicateRunError(RelayInputError):
    status_code = 409

    def __init__(self, run_id: str):
        super().__init__(f"Run {run_id} already exists.")
        self.run_id = run_id
