import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from roundtable.analysis import AnalysisResult
from roundtable.errors import AnalysisError, LLMError
from roundtable.orchestrator import (
    ROUTE_ANALYSIS,
    ROUTE_PANEL,
    RoundtableOrchestrator,
    SessionState,
    TurnState,
)
from roundtable.sandbox import SandboxWorker


class FakeLLM:
    """Scripted stand-in for the completion gateway, keyed on each step's message layout."""

    def __init__(self):
        self.panels_formed = 0
        self.questions_asked = 0
        self.panel_error = None
        self.failing_experts = set()
        self.bad_mindmaps = set()
        self.blocked = asyncio.Event()

    async def __call__(self, system_prompt, user_message, **kwargs):
        if "Expert's Q&A Process:" in user_message:
            title = user_message.split("Expert: ", 1)[1].split(" (", 1)[0]
            if title in self.bad_mindmaps:
                return "mindmap\n  root((no fence))"
            return f"```mermaid\nmindmap\n  root(({title}))\n```"
        if "Expert Insights:" in user_message:
            return "Synthesized answer"
        if "Final Answer:" in user_message:
            return '{"questions": [{"text": "What next?"}, {"text": "Why?"}]}'
        if "Questions to Answer:" in user_message:
            title = system_prompt.split("You are ", 1)[1].split(",", 1)[0]
            if title in self.failing_experts:
                raise LLMError("timeout")
            return '{"answers": ["answer 1", "answer 2", "answer 3"]}'
        if "Expert Background:" in user_message:
            start = self.questions_asked
            self.questions_asked += 3
            return "\n".join(f"Question {n}?" for n in range(start + 1, start + 4))
        if "Q&A:\n" in user_message:
            return f"Summary of {user_message.count('Q: ')} answers"
        if "Available document content:" in user_message:
            if "slow" in user_message:
                self.blocked.set()
                await asyncio.Event().wait()
            if self.panel_error:
                raise self.panel_error
            self.panels_formed += 1
            n = self.panels_formed
            return (
                '{"experts": ['
                f'{{"title": "Statistician {n}", "specialty": "stats", "name": "S{n}"}}, '
                f'{{"title": "Regulator {n}", "specialty": "law", "name": "R{n}"}}, '
                f'{{"title": "Clinician {n}", "specialty": "care", "name": "C{n}"}}'
                ']}'
            )
        raise AssertionError(f"Unexpected prompt: {user_message[:80]}")


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.llm = FakeLLM()
        for target in ('roundtable.panel.query_model', 'roundtable.synthesis.query_model'):
            patcher = patch(target, new=self.llm)
            patcher.start()
            self.addCleanup(patcher.stop)
        self.events = []
        self.orchestrator = RoundtableOrchestrator(
            state=SessionState(),
            sandbox=AsyncMock(spec=SandboxWorker),
            on_event=self.events.append,
        )

    def event_types(self):
        return [event["type"] for event in self.events]

    def user_turns(self):
        return [turn.content for turn in self.orchestrator.state.ledger if turn.role == "user"]


class TestPanelTurns(OrchestratorTestCase):

    async def test_new_question_runs_full_roundtable(self):
        result = await self.orchestrator.process_question("Was the trial well designed?")

        self.assertEqual(result.state, TurnState.DONE)
        self.assertEqual(result.route, ROUTE_PANEL)
        self.assertEqual(result.final_answer, "Synthesized answer")
        self.assertEqual(len(result.panel), 3)
        for expert in result.panel:
            self.assertEqual(len(expert.questions), 3)
            self.assertEqual(len(expert.answers), 3)
            self.assertEqual(len(expert.questions_and_answers), 3)
        self.assertEqual([m["title"] for m in result.mindmaps], ["Statistician 1", "Regulator 1", "Clinician 1"])
        self.assertEqual(result.followups, ["What next?", "Why?"])

        ledger = list(self.orchestrator.state.ledger)
        self.assertEqual([(t.role, t.content) for t in ledger], [
            ("user", "Was the trial well designed?"),
            ("assistant", "Synthesized answer"),
        ])
        self.assertEqual(self.orchestrator.state.panel_question, "Was the trial well designed?")

        types = self.event_types()
        self.assertEqual(types[0], "loading")
        self.assertEqual(types[-1], "idle")
        self.assertLess(types.index("experts_complete"), types.index("answer_complete"))
        self.assertLess(types.index("answer_complete"), types.index("mindmaps_complete"))

    async def test_follow_up_extends_existing_panel(self):
        await self.orchestrator.process_question("Was the trial well designed?")

        result = await self.orchestrator.process_question("What about the dropout rate?", is_follow_up=True)

        self.assertTrue(result.is_follow_up)
        self.assertEqual(self.llm.panels_formed, 1)
        self.assertEqual([e.title for e in result.panel], ["Statistician 1", "Regulator 1", "Clinician 1"])
        for expert in result.panel:
            self.assertEqual(len(expert.questions), 6)
            self.assertEqual(len(expert.questions_and_answers), 6)
            self.assertEqual(expert.summary, "Summary of 6 answers")
        self.assertEqual(self.orchestrator.state.panel_question, "Was the trial well designed?")
        self.assertEqual(len(self.orchestrator.state.ledger), 4)

    async def test_new_questions_replace_the_panel(self):
        await self.orchestrator.process_question("First topic?")
        first_titles = [e.title for e in self.orchestrator.state.panel]

        result = await self.orchestrator.process_question("Second topic?")

        self.assertEqual(self.llm.panels_formed, 2)
        self.assertNotEqual([e.title for e in result.panel], first_titles)
        for expert in self.orchestrator.state.panel:
            self.assertEqual(len(expert.questions), 3)
            self.assertEqual(expert.summary, "Summary of 3 answers")

    async def test_follow_up_without_panel_forms_one(self):
        result = await self.orchestrator.process_question("Anything?", is_follow_up=True)

        self.assertFalse(result.is_follow_up)
        self.assertEqual(self.llm.panels_formed, 1)
        self.assertEqual(result.state, TurnState.DONE)

    async def test_panel_failure_aborts_turn(self):
        self.llm.panel_error = LLMError("rate limited")

        result = await self.orchestrator.process_question("Was the trial well designed?")

        self.assertEqual(result.state, TurnState.FAILED)
        self.assertIn("Failed to identify experts: rate limited", result.error)
        self.assertEqual(self.orchestrator.state.panel, [])
        self.assertEqual(self.user_turns(), ["Was the trial well designed?"])
        self.assertEqual(len(self.orchestrator.state.ledger), 1)
        self.assertIn("error", self.event_types())
        self.assertEqual(self.event_types()[-1], "idle")

    async def test_failing_expert_is_isolated(self):
        self.llm.failing_experts = {"Regulator 1"}

        result = await self.orchestrator.process_question("Was the trial well designed?")

        self.assertEqual(result.state, TurnState.DONE)
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("Failed to get answers from Regulator 1", result.warnings[0])
        regulator = result.panel[1]
        self.assertTrue(regulator.unavailable)
        self.assertEqual(regulator.questions, [])
        self.assertIsNone(regulator.mermaid_mindmap)
        self.assertEqual(len(result.panel[0].questions), 3)
        self.assertIn("warning", self.event_types())

    async def test_all_experts_failing_fails_turn(self):
        self.llm.failing_experts = {"Statistician 1", "Regulator 1", "Clinician 1"}

        result = await self.orchestrator.process_question("Was the trial well designed?")

        self.assertEqual(result.state, TurnState.FAILED)
        self.assertIn("Failed to get answers from Statistician 1", result.error)
        self.assertEqual(self.orchestrator.state.panel, [])
        self.assertEqual(len(self.orchestrator.state.ledger), 1)

    async def test_invalid_mindmap_only_drops_that_expert(self):
        self.llm.bad_mindmaps = {"Regulator 1"}

        result = await self.orchestrator.process_question("Was the trial well designed?")

        self.assertEqual([m["title"] for m in result.mindmaps], ["Statistician 1", "Clinician 1"])
        self.assertEqual(result.panel[1].summary, "Summary of 3 answers")

    async def test_fanout_keeps_panel_order(self):
        self.orchestrator.fanout = True

        result = await self.orchestrator.process_question("Was the trial well designed?")

        self.assertEqual([e.title for e in result.panel], ["Statistician 1", "Regulator 1", "Clinician 1"])
        self.assertTrue(all(len(e.questions) == 3 for e in result.panel))

    @patch('roundtable.orchestrator.synthesize', new_callable=AsyncMock)
    async def test_unexpected_error_fails_turn(self, mock_synthesize):
        mock_synthesize.side_effect = RuntimeError("boom")

        result = await self.orchestrator.process_question("Was the trial well designed?")

        self.assertEqual(result.state, TurnState.FAILED)
        self.assertEqual(result.error, "Unexpected error: boom")
        self.assertEqual(self.user_turns(), ["Was the trial well designed?"])
        self.assertEqual(len(self.orchestrator.state.ledger), 1)
        self.assertEqual(self.orchestrator.state.panel, [])
        types = self.event_types()
        self.assertLess(types.index("error"), types.index("idle"))

    async def test_empty_question_rejected(self):
        with self.assertRaises(ValueError):
            await self.orchestrator.process_question("   ")


class TestCancellation(OrchestratorTestCase):

    async def test_new_question_cancels_stale_turn(self):
        stale = asyncio.create_task(self.orchestrator.process_question("slow question"))
        await asyncio.wait_for(self.llm.blocked.wait(), timeout=5)

        fresh = await self.orchestrator.process_question("fresh question")
        stale_result = await stale

        self.assertTrue(stale_result.cancelled)
        self.assertEqual(fresh.state, TurnState.DONE)
        self.assertEqual(self.user_turns(), ["fresh question"])
        self.assertEqual(self.event_types().count("idle"), 2)

    async def test_cancel_without_turn_in_flight(self):
        self.assertFalse(self.orchestrator.cancel())


class TestAnalysisTurns(OrchestratorTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.orchestrator.state.documents.extract_files([("trials.csv", b"duration_days\n10\n20\n30\n")])

    @patch('roundtable.orchestrator.run_analysis', new_callable=AsyncMock)
    @patch('roundtable.orchestrator.needs_tabular_analysis', new_callable=AsyncMock)
    async def test_data_question_takes_analysis_path(self, mock_route, mock_analysis):
        mock_route.return_value = True
        mock_analysis.return_value = AnalysisResult(
            question="What is the average trial duration?",
            normalized_table=[{"average_duration_days": 20.0}],
            formatted_explanation="The average is 20 days.",
        )

        result = await self.orchestrator.process_question("What is the average trial duration?")

        self.assertEqual(result.route, ROUTE_ANALYSIS)
        self.assertEqual(result.final_answer, "The average is 20 days.")
        self.assertEqual(result.analysis.normalized_table, [{"average_duration_days": 20.0}])
        self.assertEqual(self.llm.panels_formed, 0)
        dataset = mock_analysis.call_args[0][1]
        self.assertEqual(dataset, {"trials.csv": [{"duration_days": 10}, {"duration_days": 20}, {"duration_days": 30}]})
        self.assertEqual(
            [t.content for t in self.orchestrator.state.ledger],
            ["What is the average trial duration?", "The average is 20 days."],
        )
        self.assertIn("analysis_complete", self.event_types())
        self.assertEqual(self.event_types()[-1], "idle")

    @patch('roundtable.orchestrator.run_analysis', new_callable=AsyncMock)
    @patch('roundtable.orchestrator.needs_tabular_analysis', new_callable=AsyncMock)
    async def test_analysis_failure_records_apology(self, mock_route, mock_analysis):
        mock_route.return_value = True
        mock_analysis.side_effect = AnalysisError("ZeroDivisionError: division by zero")

        result = await self.orchestrator.process_question("Divide by the number of dropouts")

        apology = "Sorry, there was an error analyzing the data: ZeroDivisionError: division by zero"
        self.assertEqual(result.state, TurnState.FAILED)
        self.assertEqual(result.error, apology)
        self.assertEqual(list(self.orchestrator.state.ledger)[-1].content, apology)
        self.assertEqual(self.event_types()[-1], "idle")

    @patch('roundtable.analysis.query_model', new_callable=AsyncMock)
    @patch('roundtable.orchestrator.needs_tabular_analysis', new_callable=AsyncMock)
    async def test_unavailable_interpreter_records_apology(self, mock_route, mock_query):
        mock_route.return_value = True
        mock_query.return_value = "import pandas as pd\n\ndef generateAnalysis(data):\n    return {'rows': 3}"
        self.orchestrator.sandbox = SandboxWorker(python="/nonexistent/python")

        result = await self.orchestrator.process_question("How many trials are there?")

        self.assertEqual(result.state, TurnState.FAILED)
        self.assertTrue(result.error.startswith("Sorry, there was an error analyzing the data: "))
        self.assertIn("could not be started", result.error)
        self.assertEqual(
            [t.content for t in self.orchestrator.state.ledger],
            ["How many trials are there?", result.error],
        )
        types = self.event_types()
        self.assertIn("error", types)
        self.assertEqual(types[-1], "idle")

    @patch('roundtable.orchestrator.needs_tabular_analysis', new_callable=AsyncMock)
    async def test_non_data_question_goes_to_panel(self, mock_route):
        mock_route.return_value = False

        result = await self.orchestrator.process_question("Is the protocol ethical?")

        self.assertEqual(result.route, ROUTE_PANEL)
        self.assertTrue(mock_route.call_args[0][1])
        self.assertEqual(self.llm.panels_formed, 1)


class TestSessionState(unittest.TestCase):

    def test_round_trip(self):
        state = SessionState(title="Trial review")
        state.ledger.add_user("Q?")
        state.ledger.add_assistant("A.")

        restored = SessionState.from_dict(state.to_dict())

        self.assertEqual(restored.session_id, state.session_id)
        self.assertEqual(restored.title, "Trial review")
        self.assertEqual(restored.ledger.context(), "USER: Q?\n\nASSISTANT: A.")


if __name__ == "__main__":
    unittest.main()
