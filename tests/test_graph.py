"""
Tests for WorkflowGraph: wire format, node lookup, excision and integrity.
"""

import pytest

from comfyui_orchestrator.errors import AmbiguousNodeError, GraphIntegrityError
from comfyui_orchestrator.graph import Node, Ref, WorkflowGraph


@pytest.fixture
def lora_graph():
    """checkpoint -> lora -> sampler / two text encoders, plus decode and save."""
    return WorkflowGraph.from_api(
        {
            "1": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": "x.safetensors"}},
            "2": {
                "class_type": "LoraLoader",
                "inputs": {"model": ["1", 0], "clip": ["1", 1], "lora_name": "a.safetensors"},
                "_meta": {"title": "Style LoRA"},
            },
            "3": {"class_type": "CLIPTextEncode", "inputs": {"text": "cat", "clip": ["2", 1]}, "_meta": {"title": "Positive Prompt"}},
            "4": {"class_type": "CLIPTextEncode", "inputs": {"text": "", "clip": ["2", 1]}, "_meta": {"title": "Negative Prompt"}},
            "5": {"class_type": "KSampler", "inputs": {"model": ["2", 0], "positive": ["3", 0], "negative": ["4", 0]}},
            "6": {"class_type": "VAEDecode", "inputs": {"samples": ["5", 0], "vae": ["1", 2]}},
            "7": {"class_type": "SaveImage", "inputs": {"images": ["6", 0]}},
        }
    )


class TestWireFormat:
    def test_refs_parsed(self, lora_graph):
        assert lora_graph["5"].inputs["model"] == Ref("2", 0)
        assert lora_graph["3"].inputs["text"] == "cat"
        assert lora_graph["2"].title == "Style LoRA"

    def test_round_trip_keeps_titles_and_refs(self, lora_graph):
        api = lora_graph.to_api()
        assert api["5"]["inputs"]["model"] == ["2", 0]
        assert api["2"]["_meta"] == {"title": "Style LoRA"}
        assert "_meta" not in api["1"]

    def test_metadata_keys_skipped(self):
        graph = WorkflowGraph.from_api({"_meta": {"family": "x"}, "1": {"class_type": "A", "inputs": {}}})
        assert list(graph) == ["1"]

    def test_missing_class_type(self):
        with pytest.raises(GraphIntegrityError):
            WorkflowGraph.from_api({"1": {"inputs": {}}})

    def test_copy_is_deep(self, lora_graph):
        clone = lora_graph.copy()
        clone["3"].inputs["text"] = "dog"
        assert lora_graph["3"].inputs["text"] == "cat"


class TestFind:
    def test_exact_key(self, lora_graph):
        assert lora_graph.find("5") == "5"

    def test_class_prefix_case_insensitive(self, lora_graph):
        assert lora_graph.find("ksampler") == "5"
        assert lora_graph.find("VAEDec") == "6"

    def test_title_substring(self, lora_graph):
        assert lora_graph.find("positive") == "3"

    def test_class_match_wins_over_title(self, lora_graph):
        # "Lora" matches LoraLoader by class before the "Style LoRA" title is considered
        assert lora_graph.find("Lora") == "2"

    def test_ambiguous_class_prefix(self, lora_graph):
        with pytest.raises(AmbiguousNodeError) as exc:
            lora_graph.find("CLIPTextEncode")
        assert exc.value.matches == ["3", "4"]
        assert exc.value.code == "AMBIGUOUS_NODE"

    def test_ambiguous_title(self, lora_graph):
        with pytest.raises(AmbiguousNodeError):
            lora_graph.find("Prompt")

    def test_no_match(self, lora_graph):
        with pytest.raises(GraphIntegrityError) as exc:
            lora_graph.find("UpscaleModelLoader")
        assert exc.value.role == "UpscaleModelLoader"


class TestExcise:
    def test_lora_rewires_model_and_clip(self, lora_graph):
        rewired = lora_graph.excise("2")

        assert "2" not in lora_graph
        assert lora_graph["5"].inputs["model"] == Ref("1", 0)
        assert lora_graph["3"].inputs["clip"] == Ref("1", 1)
        assert lora_graph["4"].inputs["clip"] == Ref("1", 1)
        assert rewired["5.model"] == Ref("1", 0)
        assert lora_graph.integrity_errors() == []

    def test_unknown_class_needs_passthrough(self, lora_graph):
        with pytest.raises(GraphIntegrityError):
            lora_graph.excise("6")

    def test_explicit_passthrough(self, lora_graph):
        lora_graph.add("8", Node("ImageSharpen", {"image": Ref("6", 0)}))
        lora_graph["7"].inputs["images"] = Ref("8", 0)
        lora_graph.excise("8", {0: "image"})
        assert lora_graph["7"].inputs["images"] == Ref("6", 0)

    def test_missing_node(self, lora_graph):
        with pytest.raises(GraphIntegrityError):
            lora_graph.excise("99")

    def test_stage_with_bypass(self, lora_graph):
        lora_graph.add("8", Node("ImageScaleBy", {"image": Ref("6", 0), "scale_by": 2}))
        lora_graph.add("9", Node("ImageSharpen", {"image": Ref("8", 0)}))
        lora_graph["7"].inputs["images"] = Ref("9", 0)

        lora_graph.excise_stage(["8", "9"], bypass=Ref("6", 0))

        assert "8" not in lora_graph and "9" not in lora_graph
        assert lora_graph["7"].inputs["images"] == Ref("6", 0)

    def test_stage_without_bypass_must_be_self_contained(self, lora_graph):
        with pytest.raises(GraphIntegrityError):
            lora_graph.excise_stage(["6"])
        # Nothing was removed
        assert "6" in lora_graph

    def test_terminal_stage_without_bypass(self, lora_graph):
        lora_graph.excise_stage(["6", "7"])
        assert "6" not in lora_graph and "7" not in lora_graph
        assert lora_graph.integrity_errors() == []


class TestIntegrity:
    def test_sound_graph(self, lora_graph):
        assert lora_graph.integrity_errors() == []
        lora_graph.validate()

    def test_dangling_reference(self, lora_graph):
        lora_graph["5"].inputs["latent_image"] = Ref("42", 0)
        errors = lora_graph.integrity_errors()
        assert any("missing node 42" in e for e in errors)
        with pytest.raises(GraphIntegrityError):
            lora_graph.validate()

    def test_cycle(self, lora_graph):
        lora_graph["1"].inputs["loop"] = Ref("7", 0)
        assert any(e.startswith("Cycle") for e in lora_graph.integrity_errors())

    def test_consumers(self, lora_graph):
        assert sorted(c[0] for c in lora_graph.consumers("2")) == ["3", "4", "5"]
