"""
LLM Package

Provider-agnostic text completion for document categorization:

    from assessment_docs.llm import OpenAIClassifier

    classifier = OpenAIClassifier()
    raw_json = await classifier.complete(prompt, max_tokens=500, temperature=0.1)

Callers depend on TextClassifier; tests substitute an in-memory fake.
"""

from assessment_docs.llm.classifier import OpenAIClassifier, TextClassifier

__all__ = ["OpenAIClassifier", "TextClassifier"]
