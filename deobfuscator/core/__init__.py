"""Instruction, method and block graph model."""
