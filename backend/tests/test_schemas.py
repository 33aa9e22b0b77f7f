"""
Tests for the shared pydantic models — wire aliases and date validation.
"""
import warnings

import pytest
from pydantic import ValidationError

from models.schemas import CamelModel, LineItemCandidate, ReceiptCandidate, SaveRequest


class TestCamelModel:

    def test_config_dict(self):
        assert CamelModel.model_config["populate_by_name"] is True
        assert "Config" not in vars(CamelModel)

    def test_subclass_defines_without_warnings(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")

            class Row(CamelModel):
                row_id: int

        assert Row.model_validate({"rowId": 3}).row_id == 3
        assert Row(row_id=4).model_dump(by_alias=True) == {"rowId": 4}

    def test_accepts_both_spellings(self):
        assert SaveRequest.model_validate({"attachPhoto": False}).attach_photo is False
        assert SaveRequest.model_validate({"attach_photo": False}).attach_photo is False


class TestReceiptCandidate:

    def test_camel_case_analyzer_payload(self):
        cand = ReceiptCandidate.model_validate({
            "date": "2025-03-07", "supplierName": "Tango", "totalAmount": 15,
            "vatAmount": 3, "netAmount": 12,
            "lineItems": [{"description": "Euro 95", "netAmount": 8, "vatAmount": 2, "totalAmount": 10}],
        })
        assert cand.supplier_name == "Tango"
        assert isinstance(cand.line_items[0], LineItemCandidate)

    @pytest.mark.parametrize("bad", ["07-03-2025", "2025-02-31", "gisteren"])
    def test_rejects_bad_dates(self, bad):
        with pytest.raises(ValidationError):
            ReceiptCandidate(date=bad, supplier_name="x", total_amount=1, vat_amount=0, net_amount=1)
