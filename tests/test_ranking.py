from __future__ import annotations

import pytest

from selector_healing.utils.dom_extract import build_inventory
from selector_healing.utils.scoring import rank_candidates

from tests.helpers import LOGIN_ELEMENTS, descriptor


def test_ranker_prefers_the_mutated_login_button():
    inventory = build_inventory(LOGIN_ELEMENTS)

    ranked = rank_candidates(inventory, "#login-button", "click the 'Login' button", 5)

    assert ranked[0].element.element_id == "login-button-mutated"
    assert ranked[0].score == 100.0


def test_ranker_output_is_capped_and_sorted():
    inventory = build_inventory(LOGIN_ELEMENTS)

    capped = rank_candidates(inventory, "#login-button", "click the 'Login' button", 3)
    uncapped = rank_candidates(inventory, "#login-button", "click the 'Login' button", 50)

    assert len(capped) == 3
    assert len(uncapped) == len(LOGIN_ELEMENTS)
    scores = [candidate.score for candidate in uncapped]
    assert scores == sorted(scores, reverse=True)
    assert capped == uncapped[:3]


def test_ranker_returns_empty_only_for_empty_inventory():
    assert rank_candidates(build_inventory([]), "#login-button", "click the 'Login' button", 5) == []
    assert len(rank_candidates(build_inventory([descriptor("div")]), "#x", "", 5)) == 1


def test_ranker_is_deterministic():
    inventory = build_inventory(LOGIN_ELEMENTS)

    first = rank_candidates(inventory, "input[name='mail']", "type the email address", 4)
    second = rank_candidates(inventory, "input[name='mail']", "type the email address", 4)

    assert first == second
    assert first[0].element.element_id == "email"


def test_ties_go_to_document_order():
    inventory = build_inventory([descriptor("button", "Buy", **{"class": "buy"}) for _ in range(3)])

    ranked = rank_candidates(inventory, "#buy-now", "click Buy", 5)

    assert [candidate.element.index for candidate in ranked] == [0, 1, 2]
    assert len({candidate.score for candidate in ranked}) == 1


def test_interactive_elements_outrank_static_text_for_actions():
    inventory = build_inventory([descriptor("span", "Save"), descriptor("button", "Save")])

    ranked = rank_candidates(inventory, "#save-btn", "press the Save button", 5)

    assert ranked[0].element.tag == "button"
    assert ranked[0].score > ranked[1].score


def test_non_action_intent_gives_half_interactivity_weight():
    inventory = build_inventory([descriptor("button")])

    assert rank_candidates(inventory, "", "", 1)[0].score == 10.0
    assert rank_candidates(inventory, "", "click", 1)[0].score == 20.0


def test_label_that_is_also_a_verb_still_matches():
    inventory = build_inventory([descriptor("a", "Help"), descriptor("button", "Submit", type="submit")])

    ranked = rank_candidates(inventory, "#go", "click Submit", 5)

    assert ranked[0].element.text == "Submit"


def test_max_candidates_must_be_positive():
    with pytest.raises(ValueError):
        rank_candidates(build_inventory(LOGIN_ELEMENTS), "#login-button", "click", 0)
