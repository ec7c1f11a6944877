from .program import run_stack
from .registrar import PulumiRegistrar

__all__ = ["PulumiRegistrar", "run_stack"]
