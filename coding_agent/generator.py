# coding_sandbox/coding_agent/generator.py
import abc
from typing import Dict, Optional

from langchain_core.exceptions import OutputParserException
from langchain_core.prompts import ChatPromptTemplate
from langchain_ollama import ChatOllama

from coding_agent.generator_models import GeneratedProject
from coding_agent.output_parser import ProjectOutputParser
from config import config
from errors import GenerationError

__all__ = ["GeneratedProject", "ProjectGenerator", "TemplateProjectGenerator", "LLMProjectGenerator"]


class ProjectGenerator(abc.ABC):
    """タスクの説明文からプロジェクトのファイル一式を生成する外部コラボレーター。"""

    @abc.abstractmethod
    async def generate(self, description: str) -> GeneratedProject:
        ...


_COUNTER_PAGE = """'use client';

import { useState } from 'react';

export default function Home() {
  const [count, setCount] = useState(0);

  return (
    <div className="min-h-screen bg-gray-100 flex items-center justify-center">
      <div className="bg-white p-8 rounded-lg shadow-md">
        <h1 className="text-3xl font-bold text-center mb-8 text-gray-800">Counter App</h1>
        <div className="text-center">
          <div className="text-6xl font-mono font-bold text-blue-600 mb-8">{count}</div>
          <div className="space-x-4">
            <button onClick={() => setCount(count - 1)} className="bg-red-500 hover:bg-red-700 text-white font-bold py-2 px-4 rounded">
              Decrement
            </button>
            <button onClick={() => setCount(count + 1)} className="bg-green-500 hover:bg-green-700 text-white font-bold py-2 px-4 rounded">
              Increment
            </button>
          </div>
          <button onClick={() => setCount(0)} className="mt-4 bg-gray-500 hover:bg-gray-700 text-white font-bold py-2 px-4 rounded">
            Reset
          </button>
        </div>
      </div>
    </div>
  );
}
"""

_LAYOUT = """import type { Metadata } from 'next';
import './globals.css';

export const metadata: Metadata = {
  title: 'Counter App',
  description: 'Generated with Next.js and Tailwind CSS',
};

export default function RootLayout({ children }: { children: React.ReactNode }) {
  return (
    <html lang="en">
      <body className="antialiased">{children}</body>
    </html>
  );
}
"""

_STATIC_FILES: Dict[str, str] = {
    "app/globals.css": "@tailwind base;\n@tailwind components;\n@tailwind utilities;\n",
    "tailwind.config.js": """/** @type {import('tailwindcss').Config} */
module.exports = {
  content: [
    './pages/**/*.{js,ts,jsx,tsx,mdx}',
    './components/**/*.{js,ts,jsx,tsx,mdx}',
    './app/**/*.{js,ts,jsx,tsx,mdx}',
  ],
  theme: {
    extend: {},
  },
  plugins: [],
};
""",
    "next.config.js": """/** @type {import('next').NextConfig} */
const nextConfig = {};

module.exports = nextConfig;
""",
    "tsconfig.json": """{
  "compilerOptions": {
    "target": "es5",
    "lib": ["dom", "dom.iterable", "es6"],
    "allowJs": true,
    "skipLibCheck": true,
    "strict": true,
    "noEmit": true,
    "esModuleInterop": true,
    "module": "esnext",
    "moduleResolution": "bundler",
    "resolveJsonModule": true,
    "isolatedModules": true,
    "jsx": "preserve",
    "incremental": true,
    "plugins": [{ "name": "next" }],
    "paths": { "@/*": ["./*"] }
  },
  "include": ["next-env.d.ts", "**/*.ts", "**/*.tsx", ".next/types/**/*.ts"],
  "exclude": ["node_modules"]
}
""",
    ".gitignore": "/node_modules\n/.next/\n/out/\n/build\n.DS_Store\n*.tsbuildinfo\nnext-env.d.ts\n",
}


class TemplateProjectGenerator(ProjectGenerator):
    """
    モデルを使わずに、Next.js + Tailwind CSS のカウンターアプリの雛形を返します。
    APIキーやOllamaが無い環境での動作確認用。package.json は含めない。
    """

    async def generate(self, description: str) -> GeneratedProject:
        files = dict(_STATIC_FILES)
        files["app/page.tsx"] = _COUNTER_PAGE
        files["app/layout.tsx"] = _LAYOUT
        return GeneratedProject(
            files=files,
            summary=(
                f"Generated a {description.strip().lower()} using Next.js and Tailwind CSS. "
                "The app includes a counter with increment, decrement, and reset functionality."
            ),
        )


class LLMProjectGenerator(ProjectGenerator):
    def __init__(self, model_name: Optional[str] = None, base_url: Optional[str] = None,
                 temperature: float = 0.2):
        # LLMの初期化
        self.llm = ChatOllama(
            base_url=base_url or config.LLM_BASE_URL,
            model=model_name or config.LLM_MODEL_NAME,
            temperature=temperature,
        )
        self.output_parser = ProjectOutputParser()

        self.prompt_template = ChatPromptTemplate.from_messages([
            ("system", "You are an expert software architect that can generate the basic structure and boilerplate code for a project given a high-level description."),
            ("system", "Generate a project structure with starter code in each file. Be as complete as possible with all files and code to get the project up and running without additional modifications."),
            ("system", "Assume the project is a Next.js project using the app directory, styled with Tailwind CSS. Include a package.json. Do not use comments in the generated code."),
            ("system", "{format_instructions}"),
            ("system", """Example output:
{{"files": {{"app/page.tsx": "export default function Home() {{ return <div>Hello World</div>; }}", "tailwind.config.js": "module.exports = {{ content: ['./app/**/*.{{js,ts,jsx,tsx}}'], theme: {{ extend: {{}} }}, plugins: [] }};"}}, "summary": "A basic Next.js project with Tailwind CSS"}}"""),
            ("human", "{description}"),
        ])

        self.chain = (
            self.prompt_template.partial(format_instructions=self.output_parser.get_format_instructions())
            | self.llm
            | self.output_parser
        )

    async def generate(self, description: str) -> GeneratedProject:
        print(f"LLMProjectGenerator: Generating project for: {description[:100]}")
        try:
            project = await self.chain.ainvoke({"description": description})
        except OutputParserException as e:
            raise GenerationError(f"Model returned an unusable project: {e}") from e
        except Exception as e:
            raise GenerationError(f"Project generation failed: {e}") from e
        if not project.files:
            raise GenerationError("Model returned a project without files")
        print(f"LLMProjectGenerator: Generated {len(project.files)} files.")
        return project
