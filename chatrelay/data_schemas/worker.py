# chatrelay/data_schemas/worker.py

from pydantic import BaseModel
from typing import Literal


class WorkerControlRequest(BaseModel):
    action: Literal["pause", "resume", "clear-failed"]
