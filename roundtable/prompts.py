"""Prompt templates for every roundtable step.

A `PromptSet` is a strategy object: the orchestrator only ever asks it for a
system prompt, so a domain preset overrides a handful of focus strings instead
of duplicating the whole state machine.
"""

from typing import Any, Dict, List, Type

REQUIRED_IMPORTS = [
    "import json",
    "import numpy as np",
    "import pandas as pd",
]
ANALYSIS_FUNCTION = "generateAnalysis"
MINDMAP_KEYWORD = "mindmap"


def _bullets(items: List[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


class PromptSet:
    """General-purpose document analysis roundtable."""

    name = "general"

    panel_focus = (
        "These experts should be relevant to analyzing and answering questions about the provided documents."
    )
    panel_capabilities = [
        "Document content and structure",
        "Data patterns and relationships",
        "Technical and domain-specific aspects",
        "Contextual information",
        "Previous conversation points and their relationships",
    ]
    question_focus = [
        "Leverage this expert's unique perspective and knowledge",
        "Focus on analyzing and interpreting the provided document content",
        "Help extract meaningful insights from the available data",
        "Address specific aspects of the user's question in relation to the documents",
    ]
    answer_focus = [
        "Be directly based on the content from the uploaded documents",
        "Reference specific data points or sections from the documents",
        "Provide clear, factual responses supported by the available information",
        "Stay focused on your area of expertise while analyzing the document content",
    ]

    def router_system(self) -> str:
        return (
            "You decide whether a user's question requires direct computation over tabular data "
            "(aggregations, filtering, counting, averages, comparisons of rows or columns) "
            "rather than a qualitative expert discussion.\n"
            "Answer with exactly one word: yes or no."
        )

    def analysis_code_system(self) -> str:
        imports = "\n".join(REQUIRED_IMPORTS)
        return f"""You write Python code that answers a question about tabular data.

Rules:
1. Start with exactly these imports:
{imports}
2. Define exactly one function with this signature:
def {ANALYSIS_FUNCTION}(data):
3. `data` is a dict mapping sheet name to a list of row dicts. Build DataFrames with pd.DataFrame(data[sheet]).
4. Return a flat, JSON-serializable dict (plain str/int/float/bool/None values or lists of row dicts).
5. Convert numpy and pandas values to plain Python types before returning.
6. Do not import anything beyond those three modules. Do not read or write files, do not access the network, do not print.
7. Do not call the function yourself.

Output ONLY the Python code, no explanation."""

    def analysis_format_system(self) -> str:
        return """You translate the JSON result of a data analysis into a clear explanation for the user.

Structure your response with these markdown sections:
## Summary
## Key Findings
## Detailed Results
## Conclusion

Address the original question directly and quote the actual numbers from the result."""

    def panel_system(self, panel_size: int) -> str:
        return f"""You are an assistant tasked with identifying {panel_size} experts for a roundtable discussion
on a specific question. {self.panel_focus}

Consider the full conversation history when selecting experts, as the current question may relate to previous discussion points.

For the given question, conversation history, and document context, suggest {panel_size} distinct experts who would
have valuable perspectives on the topic. Each expert should have different specialties
and backgrounds to ensure diverse insights.

The experts should be able to analyze and interpret:
{_bullets(self.panel_capabilities)}

Provide your response in JSON format with the following structure:
{{
  "experts": [
    {{
      "title": "Expert's title/profession",
      "specialty": "Expert's area of expertise",
      "background": "Brief 1-2 sentence background on why this expert is relevant"
    }}
  ]
}}"""

    def questions_system(self, expert: Any, count: int) -> str:
        focus = "\n".join(f"{i}. {item}" for i, item in enumerate(self.question_focus, 1))
        return f"""You are an assistant tasked with generating {count} insightful questions related to the user's
main question. These questions should be specialized for {expert.title}
with expertise in {expert.specialty}.

Generate questions that:
{focus}

Take the previous conversation into account and do not repeat questions already asked.
Return exactly {count} questions, one per line, with no numbering and no extra text."""

    def answers_system(self, expert: Any, count: int) -> str:
        focus = "\n".join(f"{i}. {item}" for i, item in enumerate(self.answer_focus, 1))
        return f"""You are {expert.title}, an expert in {expert.specialty}.
{expert.background}

Answer the following questions based on your expertise and the provided document content.
Your answers should:
{focus}

Respond with a JSON object containing exactly {count} answers in question order:
{{"answers": ["answer to question 1", "answer to question 2"]}}"""

    def summary_system(self, expert: Any) -> str:
        return f"""You are an assistant tasked with summarizing the insights provided by {expert.name},
a {expert.title} with expertise in {expert.specialty}.

Review the expert's answers to the specialized questions and create a concise summary
of their key points and contributions to addressing the main question.

The summary should be 2-3 paragraphs and highlight the unique perspective this expert brings."""

    def mindmap_system(self) -> str:
        return f"""You are an assistant tasked with creating a Mermaid mindmap visualization. Follow these rules exactly:

1. Start with ```mermaid followed by a newline
2. The next line must be exactly: {MINDMAP_KEYWORD}
3. Use only ASCII characters
4. Use 2 spaces of indentation per level
5. The root node must use (( )) notation
6. Keep node text concise (max 40 characters), no HTML or markdown

```mermaid
{MINDMAP_KEYWORD}
  root((Expert Analysis))
    Finding 1
      Detail A
      Detail B
    Finding 2
      Detail C
```

Create a mindmap that shows this expert's key findings and their connection to the final answer.
ONLY output the mermaid code block, nothing else."""

    def synthesis_system(self) -> str:
        return """You are an assistant tasked with synthesizing expert insights into a comprehensive answer.
Consider the full conversation history when formulating your response, as the current question
may relate to or build upon previous exchanges.

Your response should:
1. Address the current question directly
2. Reference relevant points from previous conversation
3. Integrate expert insights and document evidence
4. Maintain consistency with previous answers
5. Clarify any relationships with previous topics discussed"""

    def followups_system(self, count: int) -> str:
        return f"""You are an assistant tasked with generating {count} relevant follow-up questions based on the current conversation.
The questions should:
1. Build upon the current discussion
2. Explore interesting angles not yet covered
3. Dive deeper into specific aspects mentioned
4. Be clear and concise
5. Be diverse in their focus

Return exactly {count} questions in JSON format:
{{
  "questions": [
    {{"text": "Question text here", "context": "Brief explanation of why this is a relevant follow-up"}}
  ]
}}"""

    def finalmap_system(self) -> str:
        return """You are an expert at creating cumulative mindmaps. Given a question and multiple experts' analyses,
create a hierarchical mindmap structure that combines insights from all experts. The structure should be in jsMind format.
Direction should always be right.

Return a JSON object in this exact format:
{
  "meta": {"name": "Question Summary", "author": "AI Assistant", "version": "1.0"},
  "format": "node_tree",
  "data": {"id": "root", "topic": "Main Question", "children": []}
}"""

    def related_question_system(self) -> str:
        return (
            "You turn a topic picked from a mindmap into one new, standalone question that explores "
            "that topic in the context of the user's current question. "
            "Return only the question text."
        )


class ClinicalPromptSet(PromptSet):
    """Roundtable for a Clinical Development Director reviewing trial data."""

    name = "clinical"

    panel_focus = (
        "These experts should be relevant to analyzing clinical development and drug trial data, "
        "focusing on aspects important to a Clinical Development Director. Select from specialties such as "
        "Clinical Trial Design, Biostatistics, Medical Safety, Regulatory Affairs, Clinical Operations, "
        "Data Management, Patient Safety and Medical Affairs."
    )
    panel_capabilities = [
        "Clinical trial data and documentation",
        "Safety and efficacy metrics",
        "Statistical patterns and relationships",
        "Regulatory compliance requirements",
        "Protocol design considerations",
        "Patient outcomes and adverse events",
        "Historical trial data and trends",
    ]
    question_focus = [
        "Leverage this expert's clinical expertise: trial design, safety and efficacy metrics, regulatory compliance, patient outcomes",
        "Focus on analyzing clinical data patterns and trends",
        "Help extract insights relevant to drug development decisions",
        "Address statistical significance, protocol adherence, adverse events and treatment effectiveness",
        "Consider implications for future trial design, safety monitoring and regulatory submissions",
    ]
    answer_focus = [
        "Focus on clinical relevance: safety and efficacy outcomes, statistical significance, protocol compliance",
        "Reference specific clinical data points such as trial outcomes, adverse event patterns and adherence measures",
        "Provide evidence-based insights for clinical decision-making, trial optimization and risk mitigation",
        "Highlight key clinical findings, safety signals and recommendations for clinical development",
    ]


PRESETS: Dict[str, Type[PromptSet]] = {
    PromptSet.name: PromptSet,
    ClinicalPromptSet.name: ClinicalPromptSet,
}


def get_prompt_set(name: str) -> PromptSet:
    try:
        return PRESETS[name]()
    except KeyError:
        raise ValueError(f"Unknown prompt preset: {name}. Available: {sorted(PRESETS)}")
