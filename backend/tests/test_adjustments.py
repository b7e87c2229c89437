import pytest

from core.errors import InputValidationError, NotFoundError
from inventory.adjustments import assess_adjustment, assess_sku_adjustment


class TestAssessAdjustment:
    def test_small_adjustment_needs_no_approval(self, settings):
        result = assess_adjustment(100, 95, unit_cost=2.5, settings=settings)
        assert result.quantity_change == -5
        assert result.value_impact == 12.5
        assert result.variance_percentage == 5.0
        assert result.requires_approval is False
        assert result.reasons == ()

    def test_variance_rule(self, settings):
        result = assess_adjustment(100, 88, unit_cost=1.0, settings=settings)
        assert result.variance_percentage == 12.0
        assert result.requires_approval
        assert len(result.reasons) == 1

    def test_value_rule(self, settings):
        result = assess_adjustment(1000, 1050, unit_cost=10.0, settings=settings)
        assert result.value_impact == 500.0
        assert result.variance_percentage == 5.0
        assert result.requires_approval

    def test_empty_before_skips_variance(self, settings):
        result = assess_adjustment(0, 30, unit_cost=2.0, settings=settings)
        assert result.variance_percentage is None
        assert result.requires_approval is False

    def test_missing_cost_is_zero_value(self, settings):
        result = assess_adjustment(10, 0, unit_cost=None, settings=settings)
        assert result.value_impact == 0
        assert result.variance_percentage == 100.0
        assert result.requires_approval

    @pytest.mark.parametrize("before,after", [(-1, 5), (5, -1)])
    def test_negative_quantities_rejected(self, settings, before, after):
        with pytest.raises(InputValidationError):
            assess_adjustment(before, after, unit_cost=1.0, settings=settings)


@pytest.mark.asyncio
class TestAssessSkuAdjustment:
    async def test_values_at_sku_cost(self, test_db, seeded, settings):
        result = await assess_sku_adjustment(test_db, seeded.tenant_id, seeded.sku.sku_id, 400, 200, settings=settings)
        assert result.value_impact == 500.0
        assert result.requires_approval
        assert len(result.reasons) == 2

    async def test_sku_is_tenant_scoped(self, test_db, seeded, settings):
        with pytest.raises(NotFoundError):
            await assess_sku_adjustment(test_db, seeded.tenant_id, seeded.other_sku.sku_id, 10, 9, settings=settings)
