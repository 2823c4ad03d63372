# coding_sandbox/coding_agent/generator_models.py
from typing import Dict

from pydantic import BaseModel, Field


class GeneratedProject(BaseModel):
    files: Dict[str, str] = Field(description="A record of file paths to file contents for the generated project.")
    summary: str = Field(default="", description="A summary of the generated project.")
