import pytest

from lexer import CompileError, CompileFault
from parser import (
    ArithOp,
    Comparator,
    Halt,
    Jump,
    Logic,
    Operand,
    OperandKind,
    Operation,
    Read,
    Write,
    compile_condition,
    compile_program,
    resolve_operand,
)


def var(n):
    return Operand(OperandKind.VARIABLE, n)


def ref(n):
    return Operand(OperandKind.REFERENCE, n)


def const(n):
    return Operand(OperandKind.CONSTANT, n)


def compile_error(text):
    with pytest.raises(CompileError) as excinfo:
        compile_program(text)
    return excinfo.value


# ---- operands ----

@pytest.mark.parametrize(
    "token, expected",
    [
        ("$0", var(0)),
        ("$1023", var(1023)),
        ("&7", ref(7)),
        ("&1023", ref(1023)),
        ("42", const(42)),
        ("-42", const(-42)),
        ("+3", const(3)),
        ("9223372036854775807", const(9223372036854775807)),
        ("-9223372036854775808", const(-9223372036854775808)),
    ],
)
def test_resolve_operand(token, expected):
    assert resolve_operand(token) == expected


@pytest.mark.parametrize(
    "token",
    ["$1024", "&1024", "$-1", "$", "&", "$x", "abc", "1.5", "9223372036854775808", "1_000", "=", "#1"],
)
def test_resolve_operand_rejects(token):
    assert resolve_operand(token) is None


def test_operand_str():
    assert str(var(3)) == "$3"
    assert str(ref(4)) == "&4"
    assert str(const(-5)) == "-5"


# ---- conditions ----

def test_single_clause_condition():
    condition = compile_condition(["if", "$0", "<=", "10"])
    assert len(condition.clauses) == 1
    clause = condition.clauses[0]
    assert (clause.left, clause.comparator, clause.right, clause.logic) == (var(0), Comparator.LE, const(10), None)


def test_chained_condition_keeps_connectives_in_order():
    condition = compile_condition(["if", "$0", "==", "1", "&&", "&2", "!=", "$3", "||", "4", ">", "5"])
    assert [clause.comparator for clause in condition.clauses] == [Comparator.EQ, Comparator.NE, Comparator.GT]
    assert [clause.logic for clause in condition.clauses] == [None, Logic.AND, Logic.OR]
    assert condition.clauses[1].left == ref(2)


@pytest.mark.parametrize(
    "tokens, message, received",
    [
        (["when", "$0", "==", "1"], "expecting word 'if', but received", ["when"]),
        (["if"], "expecting a value, but received", []),
        (["if", "x", "==", "1"], "expecting a value, but received", ["x"]),
        (["if", "$0", "=", "1"], "expecting comparison (==, !=, >=, <=, >, <), but received", ["="]),
        (["if", "$0", "==", "1", "and", "$1", "==", "2"], "expecting logic operator (&&, ||), but received", ["and"]),
        (["if", "$0", "=="], "expecting ending with a value, but received", ["=="]),
        (["if", "$0", "==", "1", "&&"], "expecting ending with a value, but received", ["&&"]),
        (["if", "$0"], "expecting ending with a value, but received", ["$0"]),
    ],
)
def test_condition_errors_name_expected_and_received(tokens, message, received):
    with pytest.raises(CompileError) as excinfo:
        compile_condition(tokens)
    assert excinfo.value.message == message
    assert excinfo.value.received == received
    assert excinfo.value.rule == "if"


# ---- instructions ----

def test_operation_with_arithmetic():
    program = compile_program("$2 = $0 + &1")
    (instruction,) = program.instructions
    assert isinstance(instruction, Operation)
    assert instruction.target == var(2)
    assert instruction.first == var(0)
    assert instruction.op is ArithOp.ADD
    assert instruction.second == ref(1)
    assert instruction.line == 1


def test_operation_without_arithmetic_is_a_copy():
    (instruction,) = compile_program("&3 = -8").instructions
    assert isinstance(instruction, Operation)
    assert instruction.target == ref(3)
    assert instruction.first == const(-8)
    assert instruction.op is None and instruction.second is None


@pytest.mark.parametrize("symbol, op", [("-", ArithOp.SUB), ("+", ArithOp.ADD), ("*", ArithOp.MUL), ("/", ArithOp.DIV)])
def test_arithmetic_operators(symbol, op):
    (instruction,) = compile_program(f"$0 = 1 {symbol} 2").instructions
    assert instruction.op is op


def test_jump_forms():
    program = compile_program("to end\nto end if $0 > 1\nend:")
    plain, conditional = program.instructions
    assert isinstance(plain, Jump) and plain.condition is None and plain.target == "end"
    assert isinstance(conditional, Jump)
    assert conditional.condition is not None
    assert conditional.condition.clauses[0].comparator is Comparator.GT


def test_write_read_and_halt():
    program = compile_program("write &5\nread $1\nread &2 done\nhalt\ndone:")
    write, read_plain, read_fallback, halt = program.instructions
    assert isinstance(write, Write) and write.value == ref(5)
    assert isinstance(read_plain, Read) and read_plain.target == var(1) and read_plain.fallback is None
    assert isinstance(read_fallback, Read) and read_fallback.target == ref(2) and read_fallback.fallback == "done"
    assert isinstance(halt, Halt)


def test_trailing_comments_are_allowed():
    program = compile_program("$0 = 1 + 2 # three\nwrite $0 #out\nto end # go\nend: # here")
    assert len(program.instructions) == 3
    assert program.labels["end"] == 3


@pytest.mark.parametrize(
    "text, rule, message, received",
    [
        ("5 = 3", "op", "invalid operation left value", ["5"]),
        ("x = 3", "op", "invalid operation left value", ["x"]),
        ("$0 =", "op", "invalid operation first right value", []),
        ("$0 = y", "op", "invalid operation first right value", ["y"]),
        ("$0 = 1 % 2", "op", "invalid operation, expecting (+,-,/,*), but received", ["%"]),
        ("$0 = 1 +", "op", "invalid operation second right value", []),
        ("$0 = 1 + 2 3", "op", "expecting operation to finish, but received", ["3"]),
        ("to", "to", "expecting valid word, but received", []),
        ("to Loop", "to", "expecting valid word, but received", ["Loop"]),
        ("to end now", "to", "expecting valid word, but received", ["now"]),
        ("halt now", "halt", "expecting no parameter, but received", ["now"]),
        ("write", "write", "expecting a value, but received", []),
        ("write $2000", "write", "expecting a value, but received", ["$2000"]),
        ("write 1 2", "write", "expecting only one value as a parameter, but received", ["2"]),
        ("read", "read", "expecting a variable or reference, but received", []),
        ("read 5", "read", "expecting a variable or reference, but received", ["5"]),
        ("read $0 Done", "read", "expecting valid word, but received", ["Done"]),
        ("read $0 done extra", "read", "expecting at most a fallback label, but received", ["extra"]),
    ],
)
def test_malformed_instructions(text, rule, message, received):
    error = compile_error(text)
    assert error.kind is CompileFault.MALFORMED
    assert (error.rule, error.message, error.received) == (rule, message, received)
    assert error.line == 1


def test_more_than_one_left_value():
    error = compile_error("$0 $1 = 5")
    assert error.kind is CompileFault.DUPLICATE_TARGET
    assert error.received == ["$0", "$1"]
    assert error.message == "must have only one operation left value, but received"


def test_second_assignment_is_a_duplicate_target():
    error = compile_error("$0 = $1 = 5")
    assert error.kind is CompileFault.DUPLICATE_TARGET
    assert error.received == ["$0", "=", "$1"]


def test_keyword_lines_fail_as_their_own_kind():
    # A broken write must not be reinterpreted as an assignment.
    assert compile_error("write $0 = 1").rule == "write"
    assert compile_error("to x = 1").rule == "to"
    assert compile_error("halt = 1").rule == "halt"


def test_unrecognized_instruction():
    error = compile_error("$0 = 1\njump somewhere")
    assert error.kind is CompileFault.UNRECOGNIZED_INSTRUCTION
    assert error.line == 2
    assert error.received == ["jump", "somewhere"]
    assert "instruction not found" in str(error)


def test_invalid_label_line_is_unrecognized():
    assert compile_error("Start:").kind is CompileFault.UNRECOGNIZED_INSTRUCTION


# ---- program ----

def test_labels_point_at_next_instruction():
    text = "\n".join(["start:", "$0 = 1", "# comment", "middle:", "other:", "write $0", "end:"])
    program = compile_program(text)
    assert len(program) == 2
    assert dict(program.labels) == {"start": 0, "middle": 1, "other": 1, "end": 2}


def test_source_lines_are_one_based_and_count_comments():
    program = compile_program("# c\n\n$0 = 1\n  write $0")
    assert [instruction.line for instruction in program.instructions] == [3, 4]
    assert program.instructions[1].location.statement == "write $0"
    assert program.instructions[1].location.column == 3


def test_forward_references_resolve():
    program = compile_program("to later\nwrite 1\nlater:\nwrite 2")
    assert program.labels["later"] == 2


def test_missing_jump_label_names_label_and_line():
    error = compile_error("$0 = 1\nto missing")
    assert error.kind is CompileFault.UNDEFINED_LABEL
    assert error.received == ["missing"]
    assert error.line == 2
    assert str(error) == "[Compilation error: line 2] <label> label not defined: missing."


def test_missing_read_fallback_label():
    error = compile_error("read $0 nowhere")
    assert error.kind is CompileFault.UNDEFINED_LABEL
    assert error.received == ["nowhere"]
    assert error.line == 1


def test_redefined_label_points_at_last_definition():
    program = compile_program("a:\nwrite 1\na:\nto a if 1 == 0")
    assert dict(program.labels) == {"a": 1}
    assert len(program) == 2


def test_compile_error_carries_filename():
    with pytest.raises(CompileError) as excinfo:
        compile_program("bogus", "prog.asm")
    assert excinfo.value.filename == "prog.asm"


def test_program_is_immutable():
    program = compile_program("a:\nwrite 1")
    with pytest.raises(TypeError):
        program.labels["b"] = 0
    assert isinstance(program.instructions, tuple)
