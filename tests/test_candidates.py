from rebrute.core.candidates import CandidateGenerator, build_candidate
from rebrute.core.switches import (
    AXIS_COMPRESSION,
    COMMENT_AXES,
    SwitchSelection,
    dictionary_switch,
)


def _all_disabled() -> SwitchSelection:
    return SwitchSelection(compression_levels=[], dictionary_sizes=[], recurse=False)


class TestCardinality:
    def test_product_of_axis_sizes(self):
        selection = SwitchSelection(
            compression_levels=[0, 3, 5],
            dictionary_sizes=["1024k", "4096k"],
            toggle_ignore_attributes=True,
            threads=(1, 4),
        )
        generator = CandidateGenerator(selection.build_axes(), version=420)
        # compression 3 x dictionary 2 x attribute toggle 2 x threads 4
        assert generator.total == 48
        assert len(list(generator.generate())) == 48

    def test_cardinalities_per_axis(self):
        selection = SwitchSelection(compression_levels=[0, 3, 5], dictionary_sizes=["1024k", "4096k"])
        sizes = dict(CandidateGenerator(selection.build_axes(), version=420).cardinalities())
        assert sizes[AXIS_COMPRESSION] == 3
        assert sizes["dictionary"] == 2

    def test_generation_is_restartable(self):
        generator = CandidateGenerator(SwitchSelection(compression_levels=[1, 2]).build_axes(), 420)
        assert len(list(generator.generate())) == len(list(generator.generate())) == 2

    def test_no_duplicate_argument_sets(self):
        selection = SwitchSelection(
            compression_levels=[0, 1, 2, 3, 4, 5],
            archive_formats=[4, 5],
            dictionary_sizes=["128k", "4096k", "8m"],
            mtime_precisions=[0, 1, 4],
        )
        generator = CandidateGenerator(selection.build_axes(), version=550)
        arguments = [tuple(c.arguments) for c in generator.generate() if not c.is_empty]
        assert len(arguments) == len(set(arguments))

    def test_all_axes_disabled_gives_baseline(self):
        candidates = list(CandidateGenerator(_all_disabled().build_axes(), 380).generate())
        assert len(candidates) == 1
        assert candidates[0].arguments == ["a"]

    def test_thread_range_clamped(self):
        selection = SwitchSelection(compression_levels=[], dictionary_sizes=[], recurse=False, threads=(6, 2))
        candidates = list(CandidateGenerator(selection.build_axes(), 500).generate())
        assert [c.arguments for c in candidates] == [["a", "-mt6"]]

    def test_version_filters_values(self):
        selection = SwitchSelection(compression_levels=[3], dictionary_sizes=["4096k", "8m"])
        assert CandidateGenerator(selection.build_axes(), 380).total == 1
        assert CandidateGenerator(selection.build_axes(), 600).total == 2


class TestArgumentSets:
    def test_argument_order(self):
        selection = SwitchSelection(
            compression_levels=[5],
            archive_formats=[4],
            dictionary_sizes=["4096k"],
            mtime_precisions=[1],
            toggle_ignore_attributes=True,
            no_sort=True,
            disable_solid=True,
            volume_size=15000,
            old_volume_naming=True,
            threads=(2, 2),
        )
        first = next(CandidateGenerator(selection.build_axes(), 550).generate())
        assert first.arguments == [
            "a", "-ai", "-r", "-ds", "-s-", "-m5", "-ma4", "-md4096k",
            "-tsm1", "-v15000", "-vn", "-mt2",
        ]

    def test_incompatible_format_gives_empty_set(self):
        names = [axis.name for axis in SwitchSelection().build_axes()]
        # No -ma chosen: build 550 writes RAR5, which has no 64k dictionary
        selection = tuple(
            (name, dictionary_switch("64k") if name == "dictionary" else None)
            for name in names
        )
        candidate = build_candidate(selection, 550)
        assert candidate.is_empty
        assert candidate.arguments == []

    def test_ma4_makes_small_dictionary_valid(self):
        selection = SwitchSelection(compression_levels=[3], archive_formats=[4, 5], dictionary_sizes=["64k"])
        candidates = list(CandidateGenerator(selection.build_axes(), 550).generate())
        assert len(candidates) == 2
        valid = [c.arguments for c in candidates if not c.is_empty]
        assert valid == [["a", "-r", "-m3", "-ma4", "-md64k"]]

    def test_projection(self):
        selection = SwitchSelection(compression_levels=[3], dictionary_sizes=["4096k"])
        candidate = next(CandidateGenerator(selection.build_axes(), 420).generate())
        projection = dict(candidate.projection(COMMENT_AXES))
        assert projection == {"compression": "-m3", "format": None, "dictionary": "-md4096k"}


class TestNarrowing:
    def test_narrowed_to_allowed_projections(self):
        selection = SwitchSelection(compression_levels=[1, 3, 5], dictionary_sizes=["1024k", "4096k"])
        generator = CandidateGenerator(selection.build_axes(), 420)
        allowed = frozenset({
            ((AXIS_COMPRESSION, "-m3"),),
        })
        narrowed = generator.narrowed(allowed, [AXIS_COMPRESSION])
        assert narrowed.total == 2
        assert {c.value_for(AXIS_COMPRESSION).text for c in narrowed.generate()} == {"-m3"}
