from foreman.capabilities.base import Capability
from foreman.capabilities.builtins.control import EditPlan, SubmitResponse, Wait
from foreman.capabilities.builtins.environment import (
    CreatePythonEnvironment,
    DeletePythonEnvironment,
    ExecutePythonScript,
    InstallPythonDependencies,
    PythonRepl,
    SetActiveEnvironment,
)
from foreman.capabilities.builtins.files import DeleteFile, ListFiles, ReadFile, WriteFile
from foreman.capabilities.builtins.knowledge import StoreKnowledge
from foreman.capabilities.builtins.memory import MemoryGet, MemorySet
from foreman.capabilities.builtins.shell import ExecuteCommand
from foreman.capabilities.builtins.web import FetchUrl


def default_capabilities() -> list[Capability]:
    return [
        ExecuteCommand(),
        CreatePythonEnvironment(),
        SetActiveEnvironment(),
        DeletePythonEnvironment(),
        InstallPythonDependencies(),
        ExecutePythonScript(),
        PythonRepl(),
        MemorySet(),
        MemoryGet(),
        ReadFile(),
        ListFiles(),
        WriteFile(),
        DeleteFile(),
        FetchUrl(),
        StoreKnowledge(),
        Wait(),
        SubmitResponse(),
        EditPlan(),
    ]


__all__ = [
    "CreatePythonEnvironment",
    "DeleteFile",
    "DeletePythonEnvironment",
    "EditPlan",
    "ExecuteCommand",
    "ExecutePythonScript",
    "FetchUrl",
    "InstallPythonDependencies",
    "ListFiles",
    "MemoryGet",
    "MemorySet",
    "PythonRepl",
    "ReadFile",
    "SetActiveEnvironment",
    "StoreKnowledge",
    "SubmitResponse",
    "Wait",
    "WriteFile",
    "default_capabilities",
]
