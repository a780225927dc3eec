"""Tests for metrics extraction from tool output."""

import unittest

from metaprep.metrics import (
    MetricsRule,
    extract_block,
    extract_blocks,
    extract_metrics,
    parse_fastqc_basic_statistics,
)


BBDUK_OUTPUT = """\
java -ea -Xmx1g -cp bbduk.sh
Input:                  \t1000 reads \t\t150000 bases.
QTrimmed:               \t20 reads (2.00%) \t300 bases (0.20%)
Result:                 \t980 reads (98.00%) \t149700 bases (99.80%)

Time:                   \t0.5 seconds.
Input:                  \t40 reads \t\t6000 bases.
Result:                 \t38 reads (95.00%) \t5700 bases (95.00%)
"""


class TestExtractBlock(unittest.TestCase):

    def test_inclusive_range(self):
        lines = extract_block(BBDUK_OUTPUT.splitlines(), MetricsRule("Input:", "Result:"))
        self.assertEqual(len(lines), 5)
        self.assertTrue(lines[0].startswith("Input:"))
        self.assertTrue(lines[2].startswith("Result:"))
        self.assertTrue(lines[3].startswith("Input:"))

    def test_exclusive_end(self):
        text = ">>Basic Statistics\tpass\nTotal Sequences\t10\n>>END_MODULE\n>>Other\n"
        lines = extract_block(text.splitlines(), MetricsRule(">>Basic Statistics", ">>END_MODULE", include_end=False))
        self.assertEqual(lines, [">>Basic Statistics\tpass", "Total Sequences\t10"])

    def test_end_marker_on_start_line_is_ignored(self):
        lines = extract_block(["Input: x Result: y", "middle", "Result: z", "after"], MetricsRule("Input:", "Result:"))
        self.assertEqual(lines, ["Input: x Result: y", "middle", "Result: z"])

    def test_unterminated_range_runs_to_end(self):
        lines = extract_block(["before", "Pairs: 5", "Joined: 4"], MetricsRule("Pairs:", "Avg Insert:"))
        self.assertEqual(lines, ["Pairs: 5", "Joined: 4"])

    def test_no_match(self):
        self.assertEqual(extract_block(["nothing here"], MetricsRule("Reads In:", "Duplicates Found:")), [])


class TestExtractMetrics(unittest.TestCase):

    def test_rules_applied_in_order(self):
        text = "Read 1 data:\ta\nN Rate:\t0\nRead 2 data:\tb\nN Rate:\t0\n"
        lines = extract_metrics(text, [MetricsRule("Read 2 data:", "N Rate:"), MetricsRule("Read 1 data:", "N Rate:")])
        self.assertEqual(lines, ["Read 2 data:\tb", "N Rate:\t0", "Read 1 data:\ta", "N Rate:\t0"])

    def test_blocks_keep_output_order(self):
        text = (
            "Read 1 data:\tpairs\nN Rate:\t0\n"
            "Read 2 data:\tpairs\nN Rate:\t0\n"
            "Total time: 2s\n"
            "Read 1 data:\tsingles\nN Rate:\t0\n"
        )
        blocks = extract_blocks(text, [MetricsRule("Read 1 data:", "N Rate:"), MetricsRule("Read 2 data:", "N Rate:")])
        self.assertEqual([b[0] for b in blocks], ["Read 1 data:\tpairs", "Read 2 data:\tpairs", "Read 1 data:\tsingles"])
        self.assertTrue(all(b[-1] == "N Rate:\t0" for b in blocks))

    def test_unterminated_block_runs_to_end(self):
        blocks = extract_blocks("Pairs:\t5\nJoined:\t4\n", [MetricsRule("Pairs:", "Avg Insert:")])
        self.assertEqual(blocks, [["Pairs:\t5", "Joined:\t4"]])


class TestFastqcStatistics(unittest.TestCase):

    def test_parse_basic_statistics(self):
        lines = [
            ">>Basic Statistics\tpass",
            "#Measure\tValue",
            "Total Sequences\t1000",
            "Sequence length\t35-150",
            "%GC\t45",
        ]
        stats = parse_fastqc_basic_statistics(lines)
        self.assertEqual(stats["total_sequences"], 1000)
        self.assertEqual(stats["sequence_length"], "35-150")
        self.assertEqual(stats["gc_content"], 45.0)

    def test_defaults_when_block_missing(self):
        stats = parse_fastqc_basic_statistics([])
        self.assertEqual(stats["total_sequences"], 0)


if __name__ == "__main__":
    unittest.main()
