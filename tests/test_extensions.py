# tests/test_extensions.py
"""
Tests for the hook registry, extension loading and the bundled histogram extension.
"""

import sys
import textwrap

import numpy as np
import pytest

from extensions import (
    ExtensionAPI,
    ExtensionHookError,
    MeowExtensionError,
    build_default_services,
    load_extension_module,
    load_runtime_services,
)
from interpreter import INSTRUCTION_TABLE, OPCODES, Hooks, Interpreter, MeowRuntimeError


def _quiet(cells, services):
    return Interpreter(cells, services=services, output_sink=lambda text: None)


class TestHookRegistry:

    def test_events_in_order(self):
        services = build_default_services()
        api = ExtensionAPI(services=services, ext_name="tracer")
        seen = []
        api.on_event("program_start", lambda interp: seen.append("start"))
        api.on_event("before_step", lambda interp, instruction, ip: seen.append(instruction.name))
        api.on_event("program_end", lambda interp: seen.append("end"))
        _quiet([10, 0], services).run()
        assert seen == ["start", "NOP", "RET", "end"]

    def test_decorator_form_and_priority(self):
        services = build_default_services()
        api = ExtensionAPI(services=services, ext_name="tracer")
        seen = []

        @api.on_event("program_start", priority=1)
        def low(interp):
            seen.append("low")

        @api.on_event("program_start", priority=5)
        def high(interp):
            seen.append("high")

        _quiet([], services).run()
        assert seen == ["high", "low"]

    def test_every_n_steps(self):
        services = build_default_services()
        api = ExtensionAPI(services=services, ext_name="tracer")
        ticks = []
        api.every_n_steps(2, lambda interp, ctx: ticks.append(ctx.step_index))
        _quiet([10, 10, 10, 10, 10], services).run()
        assert ticks == [0, 2, 4]

    def test_step_context_reports_fallback(self):
        services = build_default_services()
        api = ExtensionAPI(services=services, ext_name="tracer")
        contexts = []
        api.every_n_steps(1, lambda interp, ctx: contexts.append(ctx))
        _quiet([99], services).run()
        assert contexts[0].opcode == 99
        assert contexts[0].table_index == OPCODES["NOP"]
        assert contexts[0].opname == "NOP"

    def test_unknown_event(self):
        api = ExtensionAPI(services=build_default_services(), ext_name="tracer")
        with pytest.raises(MeowExtensionError):
            api.on_event("after_everything", lambda interp: None)

    def test_every_n_must_be_positive(self):
        api = ExtensionAPI(services=build_default_services(), ext_name="tracer")
        with pytest.raises(MeowExtensionError):
            api.every_n_steps(0, lambda interp, ctx: None)

    def test_failing_hook_becomes_runtime_error(self):
        services = build_default_services()
        api = ExtensionAPI(services=services, ext_name="tracer")

        def broken(interp, ctx):
            raise KeyError("missing")

        api.every_n_steps(1, broken)
        with pytest.raises(MeowRuntimeError) as info:
            _quiet([10], services).run()
        assert info.value.rule == "EXT"
        assert "extension 'tracer' failed in step rule 'broken'" in info.value.message
        assert isinstance(info.value.__cause__, ExtensionHookError)
        assert isinstance(info.value.__cause__.cause, KeyError)

    def test_on_error_event(self):
        services = build_default_services()
        api = ExtensionAPI(services=services, ext_name="tracer")
        seen = []
        api.on_event("on_error", lambda interp, error: seen.append((error, error.step_index)))
        with pytest.raises(MeowRuntimeError):
            _quiet([10, 8, 5], services).run()
        assert len(seen) == 1
        error, step_index = seen[0]
        assert error.rule == "JMP"
        # The failing step is already known when handlers run.
        assert step_index == 1

    def test_on_error_receives_wrapped_internal_error(self):
        services = build_default_services()
        api = ExtensionAPI(services=services, ext_name="tracer")
        seen = []
        api.on_event("on_error", lambda interp, error: seen.append(error))

        def boom():
            raise ValueError("no pause today")

        interpreter = Interpreter([0], hooks=Hooks(on_pause=boom), services=services)
        with pytest.raises(MeowRuntimeError) as info:
            interpreter.run()
        assert seen == [info.value]
        assert seen[0].rule == "internal"
        assert seen[0].step_index == 0

    def test_failing_on_error_handler_keeps_original_error(self):
        services = build_default_services()
        api = ExtensionAPI(services=services, ext_name="tracer")

        def broken(interp, error):
            raise RuntimeError("handler down")

        api.on_event("on_error", broken)
        with pytest.raises(MeowRuntimeError) as info:
            _quiet([8, 5], services).run()
        assert info.value.rule == "JMP"
        assert info.value.handler_error.rule == "EXT"
        assert "handler down" in info.value.handler_error.message

    def test_metadata_defaults_to_extension_name(self):
        services = build_default_services()
        entry = ExtensionAPI(services=services, ext_name="tracer").metadata(version="2.0.0")
        assert entry.name == "tracer"
        assert services.metadata == [entry]

    def test_metadata_rejects_other_api(self):
        services = build_default_services()
        api = ExtensionAPI(services=services, ext_name="tracer")
        with pytest.raises(MeowExtensionError) as info:
            api.metadata(requires_api=2)
        assert "'tracer' requires API 2" in str(info.value)
        assert services.metadata == []


class TestLoading:

    def test_missing_file(self, tmp_path):
        with pytest.raises(MeowExtensionError):
            load_extension_module(str(tmp_path / "nope.py"))

    def test_load_and_register(self, tmp_path):
        path = tmp_path / "counter.py"
        path.write_text(textwrap.dedent("""
            MEOW_EXTENSION_NAME = "counter"
            STEPS = []

            def meow_register(ext):
                ext.metadata(name="counter", version="0.1.0")
                ext.every_n_steps(1, lambda interp, ctx: STEPS.append(ctx.opname))
        """), encoding="utf-8")
        services = load_runtime_services([str(path)])
        assert [m.name for m in services.metadata] == ["counter"]
        _quiet([10, 0], services).run()

    def test_missing_register_function(self, tmp_path):
        path = tmp_path / "empty.py"
        path.write_text("X = 1\n", encoding="utf-8")
        with pytest.raises(MeowExtensionError) as info:
            load_runtime_services([str(path)])
        assert "meow_register" in str(info.value)

    def test_api_version_mismatch(self, tmp_path):
        path = tmp_path / "future.py"
        path.write_text("MEOW_EXTENSION_API_VERSION = 99\ndef meow_register(ext):\n    pass\n", encoding="utf-8")
        with pytest.raises(MeowExtensionError) as info:
            load_runtime_services([str(path)])
        assert "requires API 99" in str(info.value)

    def test_import_failure(self, tmp_path):
        path = tmp_path / "broken.py"
        path.write_text("raise RuntimeError('cannot start')\n", encoding="utf-8")
        with pytest.raises(MeowExtensionError) as info:
            load_runtime_services([str(path)])
        assert "cannot start" in str(info.value)
        assert str(tmp_path) not in sys.path

    def test_bundled_extension_metadata(self, histogram_ext):
        services = load_runtime_services([str(histogram_ext)])
        assert [(m.name, m.version) for m in services.metadata] == [("histogram", "1.0.0")]


class TestHistogramExtension:

    def test_counts_dispatched_descriptors(self, histogram_ext, capsys):
        services = load_runtime_services([str(histogram_ext)])
        interpreter = _quiet([10, 99, 0], services)
        interpreter.run()
        counts = interpreter.histogram_counts
        assert counts.shape == (len(INSTRUCTION_TABLE),)
        assert counts[OPCODES["NOP"]] == 2
        assert counts[OPCODES["RET"]] == 1
        assert int(counts.sum()) == 3
        err = capsys.readouterr().err
        assert "histogram: 3 step(s)" in err
        assert "NOP" in err and "RET" in err

    def test_helpers(self, histogram_ext):
        module = load_extension_module(str(histogram_ext))
        counts = module.opcode_histogram([0, 0, 6])
        assert np.array_equal(counts[:7], np.array([2, 0, 0, 0, 0, 0, 1]))
        assert module.format_histogram(module.opcode_histogram([])) == "histogram: 0 step(s)"
