from healthtrack.similar_cases import build_retriever, handle_similar_cases, SimilarCaseRetriever


def test_facade_reexports_entrypoints():
    # The package root exposes the composition root, the orchestrator and the
    # transport handlers from their home modules.
    from healthtrack.similar_cases import api, session
    from healthtrack.similar_cases.services import retrieval

    assert build_retriever is session.build_retriever
    assert handle_similar_cases is api.handle_similar_cases
    assert SimilarCaseRetriever is retrieval.SimilarCaseRetriever


def test_package_version():
    import healthtrack

    assert healthtrack.__version__
