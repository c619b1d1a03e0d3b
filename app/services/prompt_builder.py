"""Assembles the backend and frontend generation prompts.

Fetched instructions carry ``{{PLACEHOLDER}}`` markers that are substituted
verbatim; the surrounding sections are rendered from the bundled Jinja2
templates in ``prompt_templates/``.
"""

import json
import logging

from app.models.generation_models import BackendContext
from app.models.generation_models import FallbackInfo
from app.models.generation_models import Phase
from app.models.generation_models import ProjectSpec
from app.models.generation_models import PromptSpec
from app.models.generation_models import RouteResult
from app.models.generation_models import TemplateContent
from app.models.generation_models import TemplateDescriptor
from app.services.llm import render_prompt

logger = logging.getLogger(__name__)

__all__ = [
    "CONTEXT_UNAVAILABLE",
    "PromptBuilder",
    "build_backend_context_section",
    "build_fallback_prompt",
    "replace_placeholders",
    "summarize_for_frontend",
]

SUMMARY_MAX_CHARS = 800
FALLBACK_SUMMARY_CHARS = 300
NO_SPEC_SECTION = "No detailed specification available - generate based on user requirements"
CONTEXT_UNAVAILABLE = "Backend context not available - generate frontend with basic canister integration patterns"


def replace_placeholders(text: str, placeholders: dict[str, str]) -> str:
    for key, value in placeholders.items():
        text = text.replace("{{" + key + "}}", value)
    return text


def build_spec_section(spec: ProjectSpec | None, target: str) -> str:
    if spec is None:
        return NO_SPEC_SECTION
    return render_prompt(
        "spec_section.jinja2",
        spec_json=spec.to_json(),
        target=target,
        has_visual_design=bool(spec.visual_design),
    )


def build_fallback_prompt(
    user_input: str,
    spec: ProjectSpec | None,
    instructions: str,
    template_name: str,
    reason: str,
) -> str:
    """Generic prompt used when the selected template could not be loaded."""
    return render_prompt(
        "fallback_notice.jinja2",
        instructions=instructions,
        template_name=template_name,
        reason=reason,
        user_input=user_input,
        spec_json=spec.to_json() if spec else "",
    )


def build_backend_context_section(context: BackendContext | None, spec: ProjectSpec | None) -> str:
    """Describe the backend interface for the frontend prompt.

    Degrades to a fixed "context unavailable" notice when no context was extracted.
    """
    if context is None:
        return CONTEXT_UNAVAILABLE

    actor_name = (spec.project_meta.actor_name if spec else "") or "Main"
    payload = {
        "actorName": actor_name,
        "candidInterface": context.interface_description or "Not available (generate basic integration patterns)",
        "methodSignatures": [
            {
                "name": m.name,
                "signature": m.signature,
                "parameterTypes": m.parameter_types,
                "returnType": m.return_type,
                "type": m.kind,
            }
            for m in context.method_signatures
        ],
        "dataModels": [{"name": d.name, "definition": d.definition} for d in context.data_models],
        "apiEndpoints": [e.name for e in context.api_endpoints],
        "availableMotokoFiles": context.source_files,
        "fileCount": len(context.source_files),
    }
    section = json.dumps(payload, indent=2)
    if context.method_signatures:
        summary = "\n".join(f"  - {m.name}: {m.signature or 'no signature'} ({m.kind})" for m in context.method_signatures)
        section = f"=== BACKEND API INTERFACE ===\n{summary}\n\n=== FULL CONTEXT ===\n{section}"

    return (
        f"{section}\n\n"
        "CRITICAL ACTOR NAME INSTRUCTION:\n"
        f'The backend actor name is "{actor_name}". When importing Candid files, you MUST use this actor name:\n'
        f"CORRECT: import {{ {actor_name} }} from '../candid/{actor_name}.did.js';\n"
        "WRONG: import { backend } from '../candid/backend.did.js';\n\n"
        f'All Candid imports must use the actor name "{actor_name}".'
    )


def summarize_for_frontend(user_input: str, spec: ProjectSpec | None) -> str:
    """Concise request summary for the frontend phase's user prompt."""
    if spec is None:
        lines = [line for line in user_input.split("\n") if line.strip()]
        first_section = "\n".join(lines[:3])
        if len(first_section) > FALLBACK_SUMMARY_CHARS:
            return first_section[:FALLBACK_SUMMARY_CHARS] + "..."
        return first_section

    meta = spec.project_meta
    core = spec.core_requirements
    base = f"Build frontend for: {meta.name or 'the application'}\n\n"
    if meta.description:
        base += f"Purpose: {meta.description}\n\n"
    if core.primary_goal:
        base += f"Primary Goal: {core.primary_goal}\n\n"

    summary = base
    if core.essential_features:
        summary += "Essential Features:\n" + "".join(f"- {f}\n" for f in core.essential_features)
    if core.explicit_requirements:
        summary += "\nExplicit Requirements:\n" + "".join(f"- {r}\n" for r in core.explicit_requirements)
    if len(summary) <= SUMMARY_MAX_CHARS:
        return summary

    if not core.essential_features:
        return base[:SUMMARY_MAX_CHARS] + "..."
    remaining = SUMMARY_MAX_CHARS - len(base) - 20
    features = "Essential Features:\n"
    for index, feature in enumerate(core.essential_features):
        line = f"- {feature}\n"
        if len(features) + len(line) > remaining:
            features += f"... ({len(core.essential_features) - index} more features)\n"
            break
        features += line
    return base + features


class PromptBuilder:
    """Builds the per-phase ``PromptSpec`` from template (or fallback) content."""

    def _common_placeholders(
        self,
        user_input: str,
        spec_section: str,
        descriptor: TemplateDescriptor,
        route: RouteResult,
    ) -> dict[str, str]:
        return {
            "USER_REQUIREMENTS": user_input,
            "PROJECT_SPEC": spec_section,
            "TEMPLATE_NAME": descriptor.name,
            "TEMPLATE_DESCRIPTION": descriptor.description,
            "TEMPLATE_COMPLEXITY": descriptor.complexity,
            "ROUTING_CONFIDENCE": f"{route.confidence:.2f}",
            "REQUIRES_AUTH": "YES" if descriptor.requires_auth else "NO",
        }

    def _context_vars(self, descriptor: TemplateDescriptor, route: RouteResult) -> dict[str, object]:
        return {
            "template_name": descriptor.name,
            "template_description": descriptor.description,
            "template_complexity": descriptor.complexity,
            "requires_auth": descriptor.requires_auth,
            "confidence": route.confidence,
            "reasoning": route.reasoning,
        }

    def build_backend(
        self,
        user_input: str,
        spec: ProjectSpec | None,
        content: TemplateContent,
        descriptor: TemplateDescriptor,
        route: RouteResult,
        fallback: FallbackInfo | None = None,
    ) -> PromptSpec:
        if fallback is not None:
            system_prompt = build_fallback_prompt(
                user_input,
                spec,
                f"{content.backend_rules}\n\n{content.backend_instructions}",
                fallback.original_template,
                fallback.reason,
            )
        else:
            spec_section = build_spec_section(spec, "backend")
            system_prompt = render_prompt(
                "backend_prompt.jinja2",
                rules=content.backend_rules,
                instructions=replace_placeholders(
                    content.backend_instructions,
                    self._common_placeholders(user_input, spec_section, descriptor, route),
                ),
                template_code=content.backend_template.strip(),
                **self._context_vars(descriptor, route),
            )
        logger.debug("Backend prompt prepared (%d chars, fallback=%s)", len(system_prompt), fallback is not None)
        return PromptSpec(
            phase=Phase.BACKEND_GEN,
            endpoint="backend",
            system_prompt=system_prompt,
            user_prompt=user_input,
        )

    def build_frontend(
        self,
        user_input: str,
        spec: ProjectSpec | None,
        content: TemplateContent,
        descriptor: TemplateDescriptor,
        route: RouteResult,
        backend_context: BackendContext | None,
        fallback: FallbackInfo | None = None,
    ) -> PromptSpec:
        context_section = build_backend_context_section(backend_context, spec)
        if fallback is not None:
            system_prompt = build_fallback_prompt(
                user_input,
                spec,
                f"{content.frontend_rules}\n\n{content.frontend_instructions}",
                fallback.original_template,
                fallback.reason,
            )
            system_prompt += f"\n=== BACKEND CONTEXT ===\n\n{context_section}\n\n=== END BACKEND CONTEXT ===\n"
        else:
            spec_section = build_spec_section(spec, "frontend")
            placeholders = self._common_placeholders(user_input, spec_section, descriptor, route)
            placeholders["BACKEND_CONTEXT"] = context_section
            system_prompt = render_prompt(
                "frontend_prompt.jinja2",
                rules=content.frontend_rules,
                instructions=replace_placeholders(content.frontend_instructions, placeholders),
                backend_context=context_section,
                backend_context_inlined="{{BACKEND_CONTEXT}}" in content.frontend_instructions,
                template_code=content.frontend_template.strip(),
                has_backend_context=backend_context is not None,
                method_count=len(backend_context.method_signatures) if backend_context else 0,
                interface_available=bool(backend_context and backend_context.interface_description),
                **self._context_vars(descriptor, route),
            )
        logger.debug("Frontend prompt prepared (%d chars, fallback=%s)", len(system_prompt), fallback is not None)
        return PromptSpec(
            phase=Phase.FRONTEND_GEN,
            endpoint="frontend",
            system_prompt=system_prompt,
            user_prompt=summarize_for_frontend(user_input, spec),
        )
