import warnings

import numpy as np
import pytest

from crfseg.crf_inference import CRFInferenceEngine
from crfseg.errors import ConfigError, DegenerateSearchWarning
from crfseg.weight_search import (
    VALIDATION_IMAGE_CAP,
    SearchResult,
    ValidationImage,
    WeightSearcher,
    prepare_validation_images,
    search_pairwise_weight,
    select_weight,
)


def chain_image(chain, img_id="chain"):
    probabilities, contrast, ground_truth = chain
    return ValidationImage(img_id, probabilities, contrast, ground_truth)


def make_searcher(candidates=(0.0, 1.0, 5.0), **kwargs):
    return WeightSearcher(candidates, CRFInferenceEngine(), num_classes=2, **kwargs)


class TestSelectWeight:

    def test_lowest_error(self):
        assert select_weight({0.0: 10, 1.0: 4, 5.0: 7}) == 1.0

    def test_ties_go_to_smaller_weight(self):
        assert select_weight({2.0: 3, 0.5: 3, 4.0: 5}) == 0.5


class TestWeightSearcher:
    """Grid search of the pairwise weight."""

    def test_selects_weight_with_fewest_errors(self, chain):
        result = make_searcher().search([chain_image(chain)])

        assert isinstance(result, SearchResult)
        assert result.errors == {0.0: 1, 1.0: 0, 5.0: 2}
        assert result.chosen_weight == 1.0
        assert result.num_images == 1
        assert not result.degenerate

    def test_candidates_sorted_and_deduplicated(self):
        searcher = make_searcher(candidates=[5, 0, 1, 1.0])
        assert searcher.candidates == [0.0, 1.0, 5.0]

    @pytest.mark.parametrize("candidates", [[], [0.0, -0.5], [float("nan")]])
    def test_invalid_grid(self, candidates):
        with pytest.raises(ConfigError):
            make_searcher(candidates=candidates)

    def test_validation_cap(self):
        assert make_searcher(max_images=500).max_images == VALIDATION_IMAGE_CAP
        assert make_searcher(max_images=3).max_images == 3

    def test_only_first_images_used(self, chain):
        images = [chain_image(chain, f"img_{i}") for i in range(4)]
        result = make_searcher(max_images=2).search(images)
        assert result.num_images == 2
        assert result.errors[0.0] == 2

    def test_degenerate_without_images(self):
        with pytest.warns(DegenerateSearchWarning):
            result = make_searcher().search([])
        assert result.chosen_weight == 0.0
        assert result.degenerate

    def test_all_void_and_mismatched_images_skipped(self, chain):
        probabilities, contrast, ground_truth = chain
        void = ValidationImage("void", probabilities, contrast, np.full_like(ground_truth, -1))
        mismatched = ValidationImage("small", probabilities[:, :5], contrast, ground_truth)

        with pytest.warns(DegenerateSearchWarning):
            result = make_searcher().search([void, mismatched])
        assert result.chosen_weight == 0.0
        assert result.skipped == 2

    def test_out_of_range_label_skipped(self, chain):
        probabilities, contrast, ground_truth = chain
        bad_truth = ground_truth.copy()
        bad_truth[0, 0] = 7
        bad = ValidationImage("bad", probabilities, contrast, bad_truth)

        result = make_searcher().search([bad, chain_image(chain)])
        assert result.num_images == 1
        assert result.skipped == 1
        assert result.chosen_weight == 1.0
        assert result.errors == {0.0: 1, 1.0: 0, 5.0: 2}

    def test_parallel_matches_serial(self, chain):
        images = [chain_image(chain, f"img_{i}") for i in range(3)]
        serial = make_searcher(n_jobs=1).search(images)
        parallel = make_searcher(n_jobs=2).search(images)
        assert parallel == serial

    def test_min_images(self, chain):
        with pytest.warns(DegenerateSearchWarning):
            result = make_searcher(min_images=2).search([chain_image(chain)])
        assert result.chosen_weight == 0.0

    def test_no_warning_on_regular_search(self, chain):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DegenerateSearchWarning)
            make_searcher().search([chain_image(chain)])


class TestSearchFromImages:
    """End to end search with a trained unary model."""

    def test_search_on_raw_images(self, small_config, unary_model, training_items):
        result = search_pairwise_weight(training_items, unary_model, small_config)
        assert result.chosen_weight in small_config.pairwise_candidates
        assert result.num_images == len(training_items)
        assert set(result.errors) == set(small_config.pairwise_candidates)

    def test_mismatched_image_skipped(self, small_config, unary_model, training_items):
        img_id, img, labels = training_items[0]
        items = [(img_id, img, labels[:5])] + list(training_items[1:])
        result = search_pairwise_weight(items, unary_model, small_config)
        assert result.skipped == 1
        assert result.num_images == len(training_items) - 1

    def test_malformed_image_skipped(self, small_config, unary_model, training_items):
        img_id, img, labels = training_items[0]
        items = [(img_id, img[..., None], labels)] + list(training_items[1:])
        result = search_pairwise_weight(items, unary_model, small_config)
        assert result.skipped == 1
        assert result.num_images == len(training_items) - 1

    def test_skipped_items_count_towards_limit(self, small_config, unary_model, training_items):
        img_id, img, labels = training_items[0]
        items = [(img_id, img, labels[:5])] + list(training_items[1:])
        prepared, skipped = prepare_validation_images(items, unary_model, small_config, limit=2)
        assert skipped == 1
        assert [image.img_id for image in prepared] == [training_items[1][0]]
