"""Prompt templates for every model call made by the engine."""

from __future__ import annotations

from langchain_core.prompts import PromptTemplate

ANALYSIS_PROMPT = PromptTemplate.from_template(
    """You are the query analyzer of a retrieval-augmented assistant.

Decide how the assistant should handle the user's query.

Rules:
1) needs_retrieval is false ONLY for pure chit-chat (greetings, thanks, goodbyes).
2) action is "tool_call" when the knowledge base must be searched, "generate" when
   the query can be answered directly, and "clarify" when it is too ambiguous to act on.
3) search_query is a concise keyword-rich search string derived from the query.
4) Never change the meaning of the user's query.

Conversation so far:
{history}

Query: {query}

Respond with JSON only:
{{"intent": "<factual|exploratory|comparison|procedural|greeting|other>",
  "complexity": "<simple|moderate|complex>",
  "needs_retrieval": <true|false>,
  "action": "<tool_call|generate|clarify>",
  "keywords": ["..."],
  "search_query": "...",
  "clarify_question": "<question or null>",
  "confidence": <0.0-1.0>,
  "reasoning": "<one sentence>"}}"""
)

GRADING_PROMPT = PromptTemplate.from_template(
    """You grade whether retrieved documents are relevant enough to answer a query.

Query: {query}

Retrieved documents:
{documents}

Give one overall relevance score between 0 and 1 (1 = the documents fully answer the
query, 0 = unrelated) and a short justification naming what is missing, if anything.

Respond with JSON only: {{"score": <0.0-1.0>, "reasoning": "..."}}"""
)

RERANK_PROMPT = PromptTemplate.from_template(
    """Rate how relevant the document is to the query on a scale from 0 to 1.

Query: {query}

Document:
{document}

Respond with JSON only: {{"relevance_score": <0.0-1.0>}}"""
)

RETRY_REWRITE_PROMPT = PromptTemplate.from_template(
    """The search query below did not retrieve relevant enough documents.

Original query: {query}
Grader feedback: {feedback}

Rewrite the query so that a search engine finds better evidence. Keep the key terms of
the original query, stay concise, and do not answer the question.

Output only the rewritten query."""
)

FOLLOW_UP_PROMPT = PromptTemplate.from_template(
    """Rewrite the user's latest question into a standalone question.

Rules:
1) Only resolve pronouns (it, this, that, they) and omitted subjects from the history.
2) Do not add unrelated content.
3) If the question is already complete, return it unchanged.
4) Output only the rewritten question.

Conversation history:
{history}

Latest question: {query}

Rewritten question:"""
)

SUMMARY_PROMPT = PromptTemplate.from_template(
    """Summarize the conversation below so that it can replace the original messages.

Keep user goals, facts that were established, decisions and open questions. Write at
most 200 words.

Previous summary (may be empty):
{previous_summary}

Conversation:
{conversation}

Summary:"""
)

ANSWER_PROMPT = PromptTemplate.from_template(
    """You are a knowledge-base assistant. Answer the question using only the retrieved
documents.

Rules:
1) Ground every factual statement in the documents and cite the source id like [doc-id].
2) If the documents do not contain the answer, say that you cannot verify it.
3) Be concise and accurate.

{context}

Conversation so far:
{history}

Question: {query}

Answer:"""
)

DIRECT_PROMPT = PromptTemplate.from_template(
    """You are a friendly knowledge-base assistant. Reply briefly and naturally to the
user's message. Do not invent facts.

Conversation so far:
{history}

Message: {query}

Reply:"""
)

VERIFICATION_PROMPT = PromptTemplate.from_template(
    """Check whether the answer is supported by the context.

Question: {query}

Context:
{context}

Answer:
{answer}

List claims in the answer that the context does not support. Classify the overall
problem severity as "none", "minor" or "severe". When severity is "severe", provide a
corrected answer that only uses the context.

Respond with JSON only:
{{"is_supported": <true|false>,
  "severity": "<none|minor|severe>",
  "confidence": <0.0-1.0>,
  "problematic_claims": ["..."],
  "corrected_answer": "<text or null>"}}"""
)
