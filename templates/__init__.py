"""
Flow templates.

A flow is an ordered list of steps a contact is walked through; step
text is rendered by a small template language ({{var}}, {{if}}, {{for}})
against the session's collected data.

The executor lives in templates.executor and is imported from there.
"""
from templates.engine import render, evaluate_condition, extract_response_mapping, extract_json_path
from templates.models import (
    ApiConfig, CompletionConfig, Flow, FlowStep, InputType, MessageType, TransferConfig,
)
from templates.registry import FlowRegistry
