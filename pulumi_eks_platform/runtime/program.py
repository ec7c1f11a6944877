"""Entry point shared by the Pulumi programs under ``projects/``."""

from __future__ import annotations

import pulumi
import pulumi_aws as aws

from ..config.loader import ConfigLoader
from ..core.references import DeferredOutputSource, StackReferenceRegistry
from ..core.report import RunReport
from ..errors import PlatformError
from ..stacks import StackComposer, get_stack
from .registrar import PulumiRegistrar


def run_stack(name: str) -> PulumiRegistrar:
    """Plan, validate and register the micro-stack ``name`` in the current program."""
    stack = get_stack(name)
    report = RunReport(name)
    try:
        config = ConfigLoader.from_pulumi().load(stack.config_model)
        if "aws_region" in stack.config_model.model_fields and config.aws_region is None:
            if aws.config.region:
                config = config.model_copy(update={"aws_region": aws.config.region})

        composer = StackComposer(StackReferenceRegistry(DeferredOutputSource()))
        stack_plan = composer.plan(stack, config)
        report.policy_report = stack_plan.policy_report
        stack_plan.policy_report.raise_for_mandatory()

        registrar = PulumiRegistrar(stack_plan.plan)
        registrar.register()
        stack_plan.publisher.export(registrar.convert)
        pulumi.log.debug(stack_plan.plan.to_text())
    except PlatformError as exc:
        report.add_error(exc)
        raise
    finally:
        report.emit()
    return registrar
