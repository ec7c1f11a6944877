"""A Python Pulumi program"""

from pulumi_eks_platform.runtime import run_stack

run_stack("infra-gcp")
