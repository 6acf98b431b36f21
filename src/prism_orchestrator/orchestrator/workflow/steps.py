"""Default generation steps.

Each step builds a prompt from the session inputs and earlier outputs, asks the
provider selector for a completion and writes the result into its step
directory. Output paths are recorded relative to the session directory.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from prism_orchestrator.core.errors import StorageError
from prism_orchestrator.llm.selector import ProviderSelector
from prism_orchestrator.orchestrator.workflow.deadline import CancellationSignal
from prism_orchestrator.orchestrator.workflow.pipeline import StepResult
from prism_orchestrator.orchestrator.workflow.state_machine import WorkflowStep
from prism_orchestrator.state.atomic import read_text, write_atomic

logger = logging.getLogger(__name__)

PromptBuilder = Callable[[Mapping[str, str]], str]


def _section(title: str, body: str | None) -> str:
    return f"## {title}\n\n{body.strip() if body else '(not available)'}\n"


def prd_analysis_prompt(context: Mapping[str, str]) -> str:
    return (
        "Extract the functional and non-functional requirements from this product "
        "requirements document. Give each requirement an ID, a priority and "
        "acceptance criteria.\n\n" + _section("PRD", context.get("prd_source"))
    )


def figma_analysis_prompt(context: Mapping[str, str]) -> str:
    return (
        "List the UI components, screens and design tokens in this design "
        "description.\n\n" + _section("Design", context.get("figma_source"))
    )


def validation_prompt(context: Mapping[str, str]) -> str:
    return (
        "Cross-check the requirements against the UI components. Report missing "
        "UI for requirements, UI without requirements, and inconsistencies.\n\n"
        + _section("Requirements", context.get("requirements"))
        + _section("Components", context.get("components"))
    )


def clarification_prompt(context: Mapping[str, str]) -> str:
    return (
        "Write the clarification questions a product owner must answer to resolve "
        "the gaps in this validation report. Propose a default answer for each.\n\n"
        + _section("Validation report", context.get("validation_report"))
    )


def tdd_prompt(context: Mapping[str, str]) -> str:
    return (
        "Write a technical design document with architecture, data model, API "
        "contracts and a test plan.\n\n"
        + _section("Requirements", context.get("requirements"))
        + _section("Components", context.get("components"))
        + _section("Clarifications", context.get("clarifications"))
    )


@dataclass(frozen=True, slots=True)
class GenerationStep:
    """A step that produces one document from a single provider call."""

    name: WorkflowStep
    output_name: str
    filename: str
    prompt_builder: PromptBuilder
    selector: ProviderSelector
    session_dir: Path
    required_input: str | None = None

    def _resolve(self, value: str) -> str:
        """Text of ``value`` if it names a readable file, else ``value`` itself."""

        for candidate in (self.session_dir / value, Path(value)):
            try:
                if candidate.is_file():
                    return read_text(candidate)
            except (OSError, StorageError, ValueError):
                continue
        return value

    def execute(self, prior_outputs: Mapping[str, str], signal: CancellationSignal) -> StepResult:
        if self.required_input and not prior_outputs.get(self.required_input):
            logger.info(f"Skipping {self.name.value}: no {self.required_input} given")
            return StepResult()

        context = {key: self._resolve(value) for key, value in prior_outputs.items()}
        prompt = self.prompt_builder(context)
        text = self.selector.generate(prompt, signal=signal)
        signal.raise_if_cancelled()

        relative = f"{self.name.directory}/{self.filename}"
        write_atomic(self.session_dir / relative, text)

        provider_name = self.selector.active_provider
        provider = self.selector.get_provider(provider_name)
        cost = provider.estimate_cost(provider.count_tokens(prompt), provider.count_tokens(text))

        return StepResult(
            output_paths=(relative,),
            provider_used=provider_name,
            named_outputs={self.output_name: relative},
            estimated_cost=cost,
        )


def default_steps(selector: ProviderSelector, session_dir: Path) -> list[GenerationStep]:
    """The five pipeline steps bound to one session directory."""

    def step(
        name: WorkflowStep,
        output_name: str,
        filename: str,
        builder: PromptBuilder,
        required_input: str | None = None,
    ) -> GenerationStep:
        return GenerationStep(
            name=name,
            output_name=output_name,
            filename=filename,
            prompt_builder=builder,
            selector=selector,
            session_dir=session_dir,
            required_input=required_input,
        )

    return [
        step(WorkflowStep.PRD_ANALYSIS, "requirements", "requirements.md", prd_analysis_prompt, "prd_source"),
        step(WorkflowStep.FIGMA_ANALYSIS, "components", "components.md", figma_analysis_prompt, "figma_source"),
        step(WorkflowStep.VALIDATION, "validation_report", "validation-report.md", validation_prompt),
        step(WorkflowStep.CLARIFICATION, "clarifications", "questions.md", clarification_prompt),
        step(WorkflowStep.TDD_GENERATION, "tdd", "TDD.md", tdd_prompt),
    ]
