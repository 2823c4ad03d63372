# coding_sandbox/coding_agent/output_parser.py
import json
import re

from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import BaseOutputParser
from pydantic import ValidationError

from coding_agent.generator_models import GeneratedProject


class ProjectOutputParser(BaseOutputParser[GeneratedProject]):
    """
    LLMの出力から {"files": {...}, "summary": "..."} のJSONを取り出して検証するパーサー。
    Ollama などのモデルはJSONをコードブロックで囲んだり前置きを付けたりするので、それにも対応する。
    """

    def parse(self, text: str) -> GeneratedProject:
        candidate = self._extract_json(text)
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise OutputParserException(f"Could not parse project output as valid JSON: {e}\nFull text: {text}")

        # {"project": {...}} のように一段ネストして返すモデルがある
        if isinstance(data, dict) and "files" not in data and len(data) == 1:
            (inner,) = data.values()
            if isinstance(inner, dict) and "files" in inner:
                data = inner

        try:
            return GeneratedProject.model_validate(data)
        except ValidationError as e:
            raise OutputParserException(f"Project output does not match the expected schema: {e}\nFull text: {text}")

    @staticmethod
    def _extract_json(text: str) -> str:
        fenced = re.search(r"```(?:json)?\s*(\{.*\})\s*```", text, re.DOTALL)
        if fenced:
            return fenced.group(1)
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            raise OutputParserException(f"No JSON object found in project output. Full text:\n{text}")
        return text[start:end + 1]

    def get_format_instructions(self) -> str:
        return (
            'Return only a JSON object of the form {"files": {"<relative path>": "<file content>", ...}, '
            '"summary": "<one paragraph summary>"}.'
        )

    @property
    def _type(self) -> str:
        return "project_output_parser"
