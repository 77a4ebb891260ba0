"""
Prompt construction for workflow runs.

A workflow run sends the whole canvas to Gemini as one prompt. Which
prompt is used depends on what the canvas contains:

- content impact: a content input node (URL or news article) feeding
  enough brain or analysis nodes;
- simulation: several agent nodes working over a data node;
- standard: patient comparison, TBI evidence or research mode,
  depending on node labels.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from api.shared.gemini import extract_json_object

YOUTUBE_ID_RE = re.compile(r"(?:youtube\.com/(?:watch\?v=|shorts/)|youtu\.be/)([^&?\s]+)")

ARTICLE_TEXT_LIMIT = 20000
ARTICLE_PROMPT_SAMPLE = 10000

_SCRIPT_RE = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_ARTICLE_RE = re.compile(r"<article[\s\S]*?</article>", re.IGNORECASE)
_MAIN_RE = re.compile(r"<main[\s\S]*?</main>", re.IGNORECASE)
_PARAGRAPH_RE = re.compile(r"<p[^>]*>([\s\S]*?)</p>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

_ENTITIES = {
    "&nbsp;": " ",
    "&amp;": "&",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
}


def label(node: dict[str, Any]) -> str:
    return str((node.get("data") or {}).get("label") or "")


def _data(node: dict[str, Any]) -> dict[str, Any]:
    return node.get("data") or {}


def _label_has(node: dict[str, Any], *words: str) -> bool:
    text = label(node).lower()
    return any(w in text for w in words)


def extract_youtube_id(url: str) -> str | None:
    match = YOUTUBE_ID_RE.search(url or "")
    return match.group(1) if match else None


def decode_entities(text: str) -> str:
    for entity, char in _ENTITIES.items():
        text = text.replace(entity, char)
    return text


def extract_text_from_html(document: str) -> str:
    """Readable text of a news page.

    Scripts and styles are dropped; ``<article>`` then ``<main>`` is
    preferred as the container; paragraph text is joined, or all tags are
    stripped when the container has no paragraphs.
    """
    cleaned = _STYLE_RE.sub(" ", _SCRIPT_RE.sub(" ", document))
    match = _ARTICLE_RE.search(cleaned) or _MAIN_RE.search(cleaned)
    container = match.group(0) if match else cleaned

    paragraphs = _PARAGRAPH_RE.findall(container)
    if paragraphs:
        text = "\n\n".join(_TAG_RE.sub(" ", p) for p in paragraphs)
    else:
        text = _TAG_RE.sub(" ", container)
    text = _WS_RE.sub(" ", text).strip()
    return decode_entities(text)


# ============= Detection =============


@dataclass
class ContentAnalysis:
    url: str
    title: str
    brain_nodes: list[dict[str, Any]]
    is_news_article: bool
    youtube_id: str | None


@dataclass
class Simulation:
    kind: str  # "test" or "agents"
    agent_nodes: list[dict[str, Any]]
    data_node: dict[str, Any] | None = None
    analysis_node: dict[str, Any] | None = None
    output_node: dict[str, Any] | None = None


def detect_content_analysis(nodes: list[dict[str, Any]]) -> ContentAnalysis | None:
    """Return content-impact settings when the canvas is a content analyzer."""
    brain_nodes = [n for n in nodes if n.get("type") == "brainNode"]
    url_nodes = [
        n for n in nodes
        if n.get("type") == "contentUrlInputNode" or _data(n).get("subType") == "url"
    ]
    news_nodes = [n for n in nodes if n.get("type") == "newsArticleNode"]
    analysis_nodes = [
        n for n in nodes
        if n.get("type") in ("preprocessingNode", "analysisNode")
        or _label_has(n, "bias", "fact", "manipulation")
    ]

    has_content = bool(url_nodes or news_nodes)
    has_processing = len(brain_nodes) >= 5 or len(analysis_nodes) >= 2
    if not (has_content and has_processing):
        return None

    first_url = _data(url_nodes[0]) if url_nodes else {}
    first_news = _data(news_nodes[0]) if news_nodes else {}
    url = str(first_url.get("url") or first_url.get("value") or first_news.get("url") or "")
    title = str(first_url.get("videoTitle") or first_news.get("label") or "Content")
    return ContentAnalysis(
        url=url,
        title=title,
        brain_nodes=brain_nodes,
        is_news_article=bool(news_nodes) and not url_nodes,
        youtube_id=extract_youtube_id(url),
    )


def detect_simulation(nodes: list[dict[str, Any]], workflow_name: str) -> Simulation | None:
    """Return simulation settings for test-taking or parallel-agent canvases."""
    data_nodes = [n for n in nodes if n.get("type") in ("dataNode", "data")]
    agents = [
        n for n in nodes
        if n.get("type") == "brainOrchestratorNode" or _label_has(n, "student", "agent", "participant")
    ]
    analysis_nodes = [n for n in nodes if n.get("type") == "analysisNode" or _label_has(n, "analysis")]
    output_nodes = [n for n in nodes if n.get("type") == "outputNode" or _label_has(n, "output")]

    name = (workflow_name or "").lower()
    is_test = (
        any(w in name for w in ("test", "exam", "sat", "simulation"))
        or any(_label_has(n, "question", "exam", "test") for n in data_nodes)
    ) and len(agents) >= 2
    is_agents = len(agents) >= 3 and len(data_nodes) >= 1

    if not (is_test or is_agents):
        return None
    return Simulation(
        kind="test" if is_test else "agents",
        agent_nodes=agents,
        data_node=data_nodes[0] if data_nodes else None,
        analysis_node=analysis_nodes[0] if analysis_nodes else None,
        output_node=output_nodes[0] if output_nodes else None,
    )


# ============= Prompts =============


def _node_list(nodes: list[dict[str, Any]], fallback: str) -> str:
    return "\n".join(
        f'  - nodeId: "{n.get("id")}", nodeName: "{label(n) or f"{fallback} {i + 1}"}"'
        for i, n in enumerate(nodes)
    )


PER_NODE_FIELDS = """Each object MUST have:
- "nodeId": the exact nodeId from the list above
- "nodeName": the nodeName from the list above
- "engagement": engagement score (1-10)
- "primaryReaction": brief description of the primary reaction
- "wouldShare": "Yes" or "No"
- "keyInsight": concise insight into this node's response"""

JSON_CONTRACT = """Your ENTIRE response MUST be a single JSON object with two keys:
- "summary": a markdown string with the report sections
- "perNodeResults": the JSON array of per-node results"""


def build_video_prompt(content: ContentAnalysis) -> str:
    count = len(content.brain_nodes)
    return f"""You are an advanced neuromarketing AI simulating {count} distinct brain processing units analyzing video content.

## Analyze the ACTUAL video content at this URL
**Video URL**: {content.url}
**Title**: {content.title}

## Use EXACT Node IDs
You MUST use these exact nodeId values in perNodeResults:
{_node_list(content.brain_nodes, "Brain Node")}

## Report sections
1. Executive Summary: engagement score (0-100), key strengths, key weaknesses, viral potential
2. Emotional Response Profile: primary emotions, intensity (1-10), emotional arc, valence
3. Attention Analysis: first 3-second hook, sustaining elements, drop-off risks
4. Reward & Motivation: dopamine trigger points, payoff, re-watch motivation
5. Memory & Recall: encoding strength, memorable moments, 24-hour recall prediction
6. Social & Sharing: share motivation, debate triggers, community alignment
7. Action & Conversion: call-to-action clarity, urgency perception
8. Optimization Recommendations: top 3 improvements, timing edits, A/B test ideas

## Per-node reactions
Provide one object for EACH brain node listed above. {PER_NODE_FIELDS}

Be specific and reference what you actually see and hear.

{JSON_CONTRACT}
"""


def build_article_prompt(content: ContentAnalysis, nodes: list[dict[str, Any]], article_text: str) -> str:
    sample = (
        article_text[:ARTICLE_PROMPT_SAMPLE]
        if article_text
        else "[Article text not available - analyze based on URL context]"
    )
    modules = [
        n for n in nodes
        if n.get("type") in ("preprocessingNode", "analysisNode", "brainNode")
        or _label_has(n, "detector", "checker", "scanner", "analyzer")
    ]
    module_list = "\n".join(f"- {label(n) or n.get('type')}" for n in modules) or "- General Content Analyzer"
    all_nodes = "\n".join(
        f'  - nodeId: "{n.get("id")}", nodeName: "{label(n) or n.get("type")}"' for n in nodes
    )
    return f"""You are an advanced media bias and content impact analyst powered by a multi-node AI pipeline.

## Analysis pipeline modules
{module_list}

## Article to analyze
**Title**: {content.title}
**URL**: {content.url}

## Article text
{sample}

## Use EXACT Node IDs
{all_nodes}

## Report sections
1. Executive Summary: bias rating (Left-Strong, Left-Lean, Center, Right-Lean, Right-Strong), credibility score (0-100), key findings
2. Bias Detection: political leaning indicators with quotes, loaded language, source diversity
3. Manipulation Tactics: emotional manipulation, logical fallacies, misleading statistics
4. Fact Check Summary: verifiable claims, accuracy, missing context
5. Audience Impact: target demographic, likely emotional response, opinion shift risk

## Per-node results
Provide one object per node. {PER_NODE_FIELDS}

Quote the article directly when identifying bias or manipulation.

{JSON_CONTRACT}
"""


def build_simulation_prompt(simulation: Simulation, workflow_name: str) -> str:
    agents = simulation.agent_nodes
    data = _data(simulation.data_node) if simulation.data_node else {}
    data_label = data.get("label") or "Input Data"
    data_details = data.get("sampleDataDescription") or data.get("description") or "Sample dataset"
    agent_list = _node_list(agents, "Agent")

    if simulation.kind == "test":
        extra = ""
        if simulation.analysis_node:
            extra += f"**Analysis**: {label(simulation.analysis_node)}\n"
        if simulation.output_node:
            extra += f"**Output**: {label(simulation.output_node)}\n"
        return f"""You are simulating {len(agents)} participants taking a test/exam.

## Simulation context
**Workflow Name**: {workflow_name}
**Data Source**: {data_label}
**Data Details**: {data_details}
**Number of Participants**: {len(agents)}
{extra}
## Participant list (use these EXACT nodeIds)
{agent_list}

## Steps
1. Generate a realistic set of at least 20 test questions from the data source description.
2. Simulate each participant with individual strengths, pacing and natural score variation.
3. For EACH participant return an object with "nodeId", "nodeName", "score", "mathScore",
   "readingScore", "writingScore", "timeSpent", "questionsAnswered", "strengths",
   "weaknesses" and "performanceNotes".
4. Summarize class average, score distribution, commonly missed question types and recommendations.

Return a JSON object: {{"summary": "<markdown narrative>", "perNodeResults": [...]}}
"""

    return f"""You are simulating {len(agents)} agents processing data in parallel.

## Simulation context
**Workflow Name**: {workflow_name}
**Data Source**: {data_label}
**Data Details**: {data_details}
**Number of Agents**: {len(agents)}

## Agent list (use these EXACT nodeIds)
{agent_list}

## Task
1. Generate sample data based on the data source description.
2. Simulate each agent processing the data with realistic variation.
3. Return one result per agent with "nodeId", "nodeName", "status", "processingTime",
   "result" and "insights".

Return a JSON object: {{"summary": "<markdown overview>", "perNodeResults": [...]}}
"""


def build_standard_prompt(nodes: list[dict[str, Any]]) -> str:
    """Patient comparison, TBI evidence or research prompt."""
    region_nodes = [n for n in nodes if n.get("type") == "brainRegion" or _data(n).get("regionId")]
    data_nodes = [n for n in nodes if n.get("type") in ("data", "dataNode")]
    analysis_nodes = [n for n in nodes if n.get("type") in ("analysis", "brain", "analysisNode")]
    reference_nodes = [
        n for n in nodes
        if n.get("type") in ("reference", "referenceDatasetNode") or "HCP" in label(n) or "Reference" in label(n)
    ]
    comparison_nodes = [
        n for n in nodes
        if n.get("type") in ("comparison", "comparisonAgentNode")
        or "Deviation" in label(n) or "Comparison" in label(n)
    ]
    tbi = any(_label_has(n, "tbi", "traumatic") for n in nodes)
    patient = any(_label_has(n, "patient", "upload") for n in nodes)

    regions = "\n".join(
        f"- {_data(r).get('regionName') or label(r) or 'Unknown Region'}"
        + (f" ({_data(r)['regionAbbreviation']})" if _data(r).get("regionAbbreviation") else "")
        for r in region_nodes
    )
    references = "\n".join(
        f"- {label(r) or 'Reference Dataset'}"
        + (f": {_data(r).get('subjects') or _data(r).get('description')}"
           if _data(r).get("subjects") or _data(r).get("description") else "")
        for r in reference_nodes
    )
    comparisons = "\n".join(
        f"- {label(c) or 'Comparison'} ({_data(c).get('comparisonType') or 'deviation'} analysis)"
        for c in comparison_nodes
    )
    data_sources = "\n".join(f"- {label(d)}: {_data(d).get('description') or 'No description'}" for d in data_nodes)
    analyses = "\n".join(f"- {label(a)}: {_data(a).get('description') or 'Neural analysis'}" for a in analysis_nodes)

    sections: list[str] = []

    if (patient and reference_nodes) or comparison_nodes:
        sections.append(
            "You are a clinical neuroscience assistant specializing in individual patient "
            "analysis against normative databases.\n\n## Workflow Type: Patient vs. Control Group Comparison"
        )
        if references:
            sections.append(
                f"## Reference Datasets (Healthy Controls)\n{references}\n\n"
                "These normative datasets are the baseline for comparison."
            )
        if regions:
            sections.append(f"## Target Brain Regions\n{regions}\n\nFocus the deviation analysis on these regions.")
        if comparisons:
            sections.append(f"## Comparison Methods\n{comparisons}")
        if tbi:
            sections.append(
                "## TBI Analysis Mode\nFocus on white matter tract integrity, corpus callosum and "
                "frontal-temporal connections, axonal shearing patterns and functional implications."
            )
        sections.append(
            "## Task: Generate Patient Deviation Report\n"
            "1. **Executive Summary**\n"
            "2. **Deviation Analysis**: regions deviating from healthy controls, z-scores and percentiles\n"
            "3. **Clinical Implications**\n"
            "4. **Comparison to Literature**\n"
            "5. **Recommendations**: follow-up assessments or interventions\n\n"
            "Write in plain language for patients, cite statistical methods, and suggest next steps for clinicians."
        )
    elif tbi:
        sections.append(
            "You are a forensic neuroscience expert specializing in Traumatic Brain Injury "
            "documentation and analysis.\n\n## Workflow Type: TBI Evidence Generation"
        )
        if regions:
            sections.append(f"## Target Brain Regions\n{regions}")
        if references:
            sections.append(f"## Normative Reference\n{references}")
        sections.append(
            "## Task: Generate TBI Evidence Report\n"
            "1. **Injury Pattern Analysis**\n"
            "2. **White Matter Assessment**: corpus callosum, arcuate fasciculus, corticospinal tract\n"
            "3. **Deviation Quantification**\n"
            "4. **Functional Correlates**\n"
            "5. **Causation Opinion**\n"
            "6. **Prognosis**\n\n"
            "Cite relevant literature and use precise statistical language."
        )
    else:
        sections.append("You are a neuroscience research assistant specializing in brain imaging analysis.")
        if regions:
            sections.append(
                f"## Target Brain Regions\n{regions}\n\n"
                "Provide region-specific insights, known functions, connectivity patterns and research findings."
            )
        if data_sources:
            sections.append(
                f"## Data Sources\n{data_sources}\n\n"
                "Consider data quality, preprocessing requirements and compatibility with the target regions."
            )
        if analyses:
            sections.append(f"## Analysis Pipeline\n{analyses}")
        sections.append(
            "## Task\n"
            "1. **Region Overview**\n"
            "2. **Analysis Recommendations**\n"
            "3. **Expected Findings**\n"
            "4. **Quality Considerations**\n"
            "5. **Related Research**\n\n"
            "Be specific and provide actionable guidance."
        )

    return "\n\n".join(sections)


def count_regions(nodes: list[dict[str, Any]]) -> int:
    return sum(1 for n in nodes if n.get("type") == "brainRegion" or _data(n).get("regionId"))


@dataclass
class ParsedResult:
    text: str
    per_node_results: list[Any] = field(default_factory=list)


def parse_model_output(text: str) -> ParsedResult:
    """Split model output into summary text and per-node results.

    When the output holds a JSON object, its ``summary`` replaces the raw
    text and ``perNodeResults`` is returned; otherwise the text is kept.
    """
    parsed = extract_json_object(text)
    if not parsed:
        return ParsedResult(text=text)
    per_node = parsed.get("perNodeResults")
    summary = parsed.get("summary")
    return ParsedResult(
        text=summary if isinstance(summary, str) and summary else text,
        per_node_results=per_node if isinstance(per_node, list) else [],
    )
