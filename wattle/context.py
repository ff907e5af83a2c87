"""
Per-application collaborators, built once by the app factory
"""
from dataclasses import dataclass
from typing import Any

from flask import current_app

EXTENSION_KEY = "wattle"


@dataclass
class Services:
    store: Any
    storage: Any
    verifier: Any
    assistant: Any
    fhir: Any
    holistic: Any

    def close(self) -> None:
        self.store.close()


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
