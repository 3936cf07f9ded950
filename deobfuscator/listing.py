"""
Text listing of a module's methods.

A listing is a mapping with a ``methods`` list, stored as JSON or YAML:

    methods:
      - name: Main
        declaring_type: Program
        return_type: System.Void
        parameters: []
        is_static: true
        body:
          instructions:
            - {label: IL_0000, opcode: call, operand: Program::IsFeatureEnabled}
            - {opcode: brtrue.s, operand: IL_0010}
          exception_handlers:
            - {type: catch, try_start: IL_0002, try_end: IL_0008,
               handler_start: IL_0008, handler_end: null,
               catch_type: System.Exception}

Branch operands are labels, switch operands lists of labels. A call
operand is either a ``Type::Name`` string naming a method of the listing
or a mapping ``{method, return_type, parameters, is_static}`` describing an
external method.
"""

import json
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from deobfuscator.core.instruction import Instruction, update_offsets
from deobfuscator.core.method import (
    VOID_TYPE,
    ExceptionHandler,
    HandlerType,
    MethodBody,
    MethodDef,
    MethodRef,
)
from deobfuscator.core.opcodes import OPCODE_BY_MNEMONIC, OperandType
from deobfuscator.exceptions import ListingError

INTEGER_OPERANDS = (
    OperandType.INT,
    OperandType.SHORT_INT,
    OperandType.SHORT_VAR,
    OperandType.LONG,
)
TEXT_OPERANDS = (OperandType.STRING, OperandType.FIELD)
BRANCH_OPERANDS = (OperandType.BRANCH, OperandType.SHORT_BRANCH)
HANDLER_LABELS = ("try_start", "try_end", "handler_start", "handler_end", "filter_start")


def _split_reference(reference: str):
    declaring_type, sep, name = reference.rpartition("::")
    if not sep or not declaring_type or not name:
        raise ListingError(f"Method reference must look like Type::Name: {reference!r}")
    return declaring_type, name


def _require(record: Mapping[str, Any], key: str, where: str):
    if key not in record:
        raise ListingError(f"{where} is missing {key!r}")
    return record[key]


def _method_header(record: Mapping[str, Any]) -> MethodDef:
    if not isinstance(record, Mapping):
        raise ListingError(f"Method record must be a mapping, got {type(record).__name__}")
    name = _require(record, "name", "Method record")
    return MethodDef(
        name=name,
        declaring_type=_require(record, "declaring_type", f"Method {name}"),
        return_type=record.get("return_type", VOID_TYPE),
        parameters=record.get("parameters") or [],
        is_static=bool(record.get("is_static", True)),
    )


class _BodyDecoder:
    def __init__(self, method: MethodDef, methods_by_name: Dict[str, MethodDef]):
        self.method = method
        self.methods_by_name = methods_by_name
        self.labels: Dict[str, Instruction] = {}

    def where(self, index: Optional[int] = None) -> str:
        if index is None:
            return self.method.full_name
        return f"{self.method.full_name} instruction {index}"

    def label(self, name, what: str) -> Instruction:
        if name not in self.labels:
            raise ListingError(f"{self.where()}: unknown label {name!r} in {what}")
        return self.labels[name]

    def call_target(self, operand, index: int):
        if isinstance(operand, str):
            if operand in self.methods_by_name:
                return self.methods_by_name[operand]
            declaring_type, name = _split_reference(operand)
            return MethodRef(name, declaring_type)
        if isinstance(operand, Mapping):
            declaring_type, name = _split_reference(
                _require(operand, "method", self.where(index))
            )
            return MethodRef(
                name,
                declaring_type,
                return_type=operand.get("return_type", VOID_TYPE),
                parameters=operand.get("parameters") or [],
                is_static=bool(operand.get("is_static", True)),
            )
        raise ListingError(f"{self.where(index)}: bad method operand {operand!r}")

    def decode(self, record: Mapping[str, Any]) -> MethodBody:
        raw_instructions = record.get("instructions") or []
        instructions = []
        for index, raw in enumerate(raw_instructions):
            if not isinstance(raw, Mapping):
                raise ListingError(f"{self.where(index)}: instruction must be a mapping")
            mnemonic = _require(raw, "opcode", self.where(index))
            if mnemonic not in OPCODE_BY_MNEMONIC:
                raise ListingError(f"{self.where(index)}: unknown opcode {mnemonic!r}")
            instr = Instruction(OPCODE_BY_MNEMONIC[mnemonic])
            label = raw.get("label")
            if label is not None:
                if label in self.labels:
                    raise ListingError(f"{self.where(index)}: duplicate label {label!r}")
                self.labels[label] = instr
            instructions.append(instr)

        # Operands are decoded once every label is known
        for index, (raw, instr) in enumerate(zip(raw_instructions, instructions)):
            instr.operand = self.operand(instr, raw.get("operand"), index)
        update_offsets(instructions)

        handlers = [
            self.handler(raw) for raw in record.get("exception_handlers") or []
        ]
        return MethodBody(instructions=instructions, exception_handlers=handlers)

    def operand(self, instr: Instruction, operand, index: int):
        kind = instr.operand_type
        if kind == OperandType.NONE:
            if operand is not None:
                raise ListingError(
                    f"{self.where(index)}: {instr.opcode.mnemonic} takes no operand"
                )
            return None
        if operand is None:
            raise ListingError(f"{self.where(index)}: {instr.opcode.mnemonic} needs an operand")
        if kind in BRANCH_OPERANDS:
            return self.label(operand, instr.opcode.mnemonic)
        if kind == OperandType.SWITCH:
            if not isinstance(operand, list):
                raise ListingError(f"{self.where(index)}: switch needs a list of labels")
            return [self.label(name, "switch") for name in operand]
        if kind == OperandType.METHOD:
            return self.call_target(operand, index)
        if kind in INTEGER_OPERANDS:
            if isinstance(operand, bool) or not isinstance(operand, int):
                raise ListingError(f"{self.where(index)}: expected an integer, got {operand!r}")
            return operand
        return str(operand)

    def handler(self, raw: Mapping[str, Any]) -> ExceptionHandler:
        try:
            handler_type = HandlerType(_require(raw, "type", self.where()))
        except ValueError as e:
            raise ListingError(f"{self.where()}: {e}") from e
        bounds = {}
        for key in HANDLER_LABELS:
            name = raw.get(key)
            bounds[key] = None if name is None else self.label(name, key)
        for key in ("try_start", "handler_start"):
            if bounds[key] is None:
                raise ListingError(f"{self.where()}: exception handler is missing {key!r}")
        if handler_type == HandlerType.FILTER and bounds["filter_start"] is None:
            raise ListingError(f"{self.where()}: filter handler is missing 'filter_start'")
        return ExceptionHandler(
            handler_type=handler_type, catch_type=raw.get("catch_type"), **bounds
        )


def load_module(data: Mapping[str, Any]) -> List[MethodDef]:
    """
    Decode a listing into method definitions.

    Raises:
        ListingError: If the listing is malformed
    """
    if not isinstance(data, Mapping) or not isinstance(data.get("methods"), list):
        raise ListingError("Listing must be a mapping with a 'methods' list")

    records = data["methods"]
    methods = [_method_header(record) for record in records]
    methods_by_name: Dict[str, MethodDef] = {}
    for method in methods:
        if method.reference_name in methods_by_name:
            raise ListingError(f"Duplicate method {method.reference_name}")
        methods_by_name[method.reference_name] = method

    for method, record in zip(methods, records):
        body = record.get("body")
        if body is not None:
            if not isinstance(body, Mapping):
                raise ListingError(f"Body of {method.full_name} must be a mapping")
            method.body = _BodyDecoder(method, methods_by_name).decode(body)
    return methods


def _label(instr: Instruction) -> str:
    return f"IL_{instr.offset:04X}"


def _dump_operand(instr: Instruction, module_methods) -> Any:
    operand = instr.operand
    if operand is None:
        return None
    if isinstance(operand, Instruction):
        return _label(operand)
    if isinstance(operand, list):
        return [_label(target) for target in operand]
    if isinstance(operand, MethodRef):
        if isinstance(operand, MethodDef) and operand in module_methods:
            return operand.reference_name
        return {
            "method": operand.reference_name,
            "return_type": operand.return_type,
            "parameters": list(operand.parameters),
            "is_static": operand.is_static,
        }
    return operand


def _dump_body(body: MethodBody, module_methods) -> Dict[str, Any]:
    update_offsets(body.instructions)
    instructions = []
    for instr in body.instructions:
        record = {"label": _label(instr), "opcode": instr.opcode.mnemonic}
        operand = _dump_operand(instr, module_methods)
        if operand is not None:
            record["operand"] = operand
        instructions.append(record)

    handlers = []
    for handler in body.exception_handlers:
        record = {"type": handler.handler_type.value}
        for key in HANDLER_LABELS:
            bound = getattr(handler, key)
            if key == "filter_start" and bound is None:
                continue
            record[key] = _label(bound) if bound is not None else None
        if handler.catch_type is not None:
            record["catch_type"] = handler.catch_type
        handlers.append(record)
    return {"instructions": instructions, "exception_handlers": handlers}


def dump_module(methods: Sequence[MethodDef]) -> Dict[str, Any]:
    """Encode method definitions as a listing mapping."""
    module_methods = set(methods)
    records = []
    for method in methods:
        record = {
            "name": method.name,
            "declaring_type": method.declaring_type,
            "return_type": method.return_type,
            "parameters": list(method.parameters),
            "is_static": method.is_static,
        }
        if method.has_body:
            record["body"] = _dump_body(method.body, module_methods)
        records.append(record)
    return {"methods": records}


def read_listing(path: str) -> List[MethodDef]:
    """Load a listing file. ``.json`` files are read as JSON, anything else as YAML."""
    try:
        with open(path, "r") as f:
            if path.endswith(".json"):
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ListingError(f"Can't read listing {path}: {e}") from e
    return load_module(data)


def export_to_json(methods: Sequence[MethodDef], filename: str) -> None:
    """Export methods to a JSON listing"""
    with open(filename, "w") as f:
        json.dump(dump_module(methods), f, indent=2)


def export_to_yaml(methods: Sequence[MethodDef], filename: str) -> None:
    """Export methods to a YAML listing"""
    with open(filename, "w") as f:
        yaml.safe_dump(dump_module(methods), f, default_flow_style=False, sort_keys=False)
