"""Micro-stack orchestration and policy validation for EKS and GKE platforms."""
